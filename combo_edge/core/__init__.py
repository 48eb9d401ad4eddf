"""Core mathematics and configuration for the Combo Edge engine.

This package contains pure building blocks:

- ``signal``       : regression, scoring rules, seeded PRNG
- ``kelly``        : Kelly criterion sizing
- ``odds_math``    : implied probability, combined odds, bucketing
- ``engine_config``: every tunable constant in one frozen dataclass

Nothing in this package imports from ``combo_edge.services``.
All modules are side-effect-free and unit-testable in isolation.
"""

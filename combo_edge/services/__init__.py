"""Stateful and logging services built on :mod:`combo_edge.core`."""

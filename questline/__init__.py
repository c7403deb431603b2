"""Questline - session state engine for choice-driven narrative adventures."""

"""Core store layer for mdboard."""

"""Tool-calling response generator and its event vocabulary."""

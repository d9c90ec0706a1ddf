"""Nodeflow - graph workflow execution engine.

Runs directed graphs of typed nodes whose configs reference each other's
outputs through ``{{label.property}}`` templates.
"""

__version__ = "0.1.0"

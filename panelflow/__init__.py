"""
PanelFlow: production workflow and quality validation engine for solar
panel assembly lines.
"""

__version__ = "0.1.0"

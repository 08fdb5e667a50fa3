"""
Observability for the PanelFlow engine.

Structured logging with per-panel correlation: every log line emitted
while a panel is being mutated carries that panel's id.
"""

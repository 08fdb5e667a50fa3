"""Plant configuration: pydantic schema and YAML loader."""

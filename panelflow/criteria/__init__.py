"""Station criteria: resolved criteria types and the hot-reloadable registry."""

"""Library App - shared helpers

- validators.py: input checks applied before the mutation layer is called
- ui_helpers.py: CLI rendering in plain, json or rich mode
"""

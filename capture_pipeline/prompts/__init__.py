"""
Prompt files for the capture pipeline.

Stored as YAML and read with PyYAML's safe_load; each file is a mapping with
at least `system` and `user` keys.
"""

"""fieldlink command line: inspect and repair the on-device tables."""

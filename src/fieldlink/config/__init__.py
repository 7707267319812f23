"""Configuration subpackage: feature flags and data paths."""

"""Configuration, logging, clock and error primitives."""

"""Payload framing, HTTP byte helpers, TCP reassembly and settings for traffic replay."""

__version__ = "1.3.0"
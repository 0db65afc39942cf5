"""Aperture: a multi-tenant conversational orchestration hub."""

__version__ = "0.1.0"

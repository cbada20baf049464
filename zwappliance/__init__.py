"""Appliance runtime: layered JSON configuration, HTTP routing, static file serving and WebDAV."""

__version__ = "0.1.0"
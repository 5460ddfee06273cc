"""openwrk: boots, supervises and routes the OpenWork sidecar services."""

__version__ = "0.1.0"

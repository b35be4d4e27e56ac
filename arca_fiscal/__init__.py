"""Autorización de comprobantes electrónicos ARCA/AFIP (WSAA + WSFEv1)."""

__version__ = "1.0.0"

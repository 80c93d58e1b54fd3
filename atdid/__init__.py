"""atdid - inspect and update atproto DID documents."""

__version__ = "0.1.0"

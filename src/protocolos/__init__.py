"""Protocol OS: describe third-party API handshakes as cURL text and run them."""

__version__ = "0.1.0"

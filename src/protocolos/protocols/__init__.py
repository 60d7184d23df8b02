"""Authentication strategies and request transports.

Key components:
- ProtocolHandler: contract every authentication strategy implements
- One handler module per protocol type (curl_default, oauth_pkce, ...)
- ProtocolRegistry: binds protocol types to handler classes
- HttpxTransport / DummyTransport: injected request transports

Submodules are imported directly (``protocolos.protocols.registry``); this
package module stays import-free so that tools can depend on ``errors``.
"""

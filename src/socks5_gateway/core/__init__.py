"""Core gateway implementation.

This package contains the core components of the gateway:
- SOCKS5 client handshake (RFC 1928 / RFC 1929)
- Bidirectional stream relay
- HTTP proxy request routing
- Credential and proxy configuration
- Statistics tracking
- Exception handling

The core package provides all the functionality needed to run the gateway,
while keeping the implementation details separate from the command-line
interface.
"""

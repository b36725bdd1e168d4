"""Command line interface modules.

This package provides the command-line tools for:
- Starting the gateway
- Validating the users and proxies configuration
- Error reporting and logging

The command modules provide user-friendly interfaces to the core gateway
functionality.
"""

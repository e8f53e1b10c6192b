"""
Z Smart Server Manager - installer, updater and service manager.

This package detects, installs, updates and uninstalls the z-smart-server
application from its GitHub releases, registers it as a systemd service and
checks for a compatible Node.js runtime.
"""

__version__ = "0.1.0"

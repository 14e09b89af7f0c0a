"""
Socksy -- SOCKS5 CONNECT proxy pinned to one network interface.

Every outbound connection is bound to an operator-chosen interface
(SO_BINDTODEVICE), so traffic through a Socksy instance always leaves
the host via that interface instead of the default route.
"""

__version__ = "0.1.0"
__author__ = "Socksy Team"

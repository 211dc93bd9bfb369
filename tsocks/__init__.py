"""
TSocks - a TUN-to-SOCKS5 VPN supervisor.

This package builds a virtual network interface, drives the native
tun2socks engine bound to it, and supervises the local SOCKS5 proxy
process that the engine forwards traffic into.
"""

__version__ = "1.0.0"
__author__ = "TSocks Contributors"

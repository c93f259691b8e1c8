"""
ShadowPilot — Control plane for a local SOCKS/HTTP proxy client
===============================================================

Components:
  • RuleEngine          – proxy / direct / reject decisions and PAC output
  • ProxySupervisor     – proxy process lifecycle, log and traffic parsing
  • ReachabilityMonitor – network status tracking and auto-reconnection

Cross-platform: Linux · macOS · Windows
"""

__version__ = "1.0.0"
__app_name__ = "ShadowPilot"

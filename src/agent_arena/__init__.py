"""
Agent Arena

A multi-agent trading competition simulator: autonomous rule-based and
LLM-driven agents trade simulated leveraged margin positions against a live
price feed, ranked in real time and narrated to observers over server-push
events.
"""

__version__ = "0.1.0"
__author__ = "Agent Arena Team"
__license__ = "MIT"

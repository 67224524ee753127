"""
Reliability layer: timeout, retry and circuit breaking around adapter calls.
"""

from .invoker import ReliableInvoker

__all__ = ["ReliableInvoker"]

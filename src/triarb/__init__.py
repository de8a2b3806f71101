"""
Triangular Arbitrage Trader.

An asynchronous bot that watches three correlated pairs on Poloniex
and trades the triangle whenever its round-trip yield clears a
threshold, with every exchange call throttled through one scheduler.
"""

__version__ = "1.0.0"
__author__ = "Tim"

"""
polyevolve - market replay backtester and genetic strategy optimizer
for binary UP/DOWN prediction markets.
"""

__version__ = "0.1.0"

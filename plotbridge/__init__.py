"""
Plotter bridge: relays plotting commands received over HTTP to a
serial-attached pen-plotter control board, one command at a time.
"""

__version__ = "0.1.0"

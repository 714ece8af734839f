"""
ibreactor - event stream and synchronous facade for TWS / IB Gateway
"""

from .core import *  # noqa: F401,F403
from .core import __all__

__version__ = "0.1.0"

"""Quote provider abstraction and the ccxt-backed implementation."""

from navsync.provider.ccxt_provider import CcxtQuoteProvider
from navsync.provider.client import QuoteProvider

__all__ = ["CcxtQuoteProvider", "QuoteProvider"]

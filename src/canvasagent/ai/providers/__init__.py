"""Vendor provider clients and their shared streaming machinery."""

from .base import PROVIDER_DISPLAY_NAMES, PROVIDER_NAMES, AIProvider, ProviderName
from .factory import ProviderRegistry, UnsupportedProviderError
from .parsing import ActionStreamAssembler, close_and_parse_json
from .rate_limit import extract_retry_delay, is_rate_limit_error, with_retry, with_stream_retry

__all__ = [
    "AIProvider",
    "ActionStreamAssembler",
    "PROVIDER_DISPLAY_NAMES",
    "PROVIDER_NAMES",
    "ProviderName",
    "ProviderRegistry",
    "UnsupportedProviderError",
    "close_and_parse_json",
    "extract_retry_delay",
    "is_rate_limit_error",
    "with_retry",
    "with_stream_retry",
]

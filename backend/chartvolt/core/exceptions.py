"""
Settlement error taxonomy.

ConfigurationError     -> entity skipped this tick, retried next tick
TransientExternalError -> swallowed at the price/effect boundary, never blocks settlement
IntegrityViolation     -> hard stop before any credit, logged as CRITICAL
"""


class SettlementError(Exception):
    """Base exception for settlement and liquidation failures"""
    pass


class ConfigurationError(SettlementError):
    """Raised for malformed thresholds, unknown ranking methods or policies"""
    pass


class TransientExternalError(SettlementError):
    """Raised when a price fetch or effect publish fails or times out"""
    pass


class IntegrityViolation(SettlementError):
    """Raised when a money or state invariant would be broken"""
    pass


class EntityNotFound(SettlementError):
    """Raised when a competition or challenge id does not exist"""
    pass

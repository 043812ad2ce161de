"""
Error taxonomy for the reserve oracle.

Authoritative-state errors abort the whole operation before any state
change becomes visible. Off-process errors (NetworkError) are raised at the
reconciliation boundary after the prior cache has been preserved.
"""


class ReserveOracleError(Exception):
    """Base exception for all reserve oracle errors"""
    pass


class ValidationError(ReserveOracleError):
    """Bad input: empty identity, zero amount, out-of-range parameter"""
    pass


class NotFoundError(ValidationError):
    """Referenced feed, report or asset does not exist"""
    pass


class AuthorizationError(ReserveOracleError):
    """Caller lacks the capability required by the operation"""

    def __init__(self, caller: str, capability):
        self.caller = caller
        self.capability = capability
        name = getattr(capability, "value", capability)
        super().__init__(f"{caller!r} lacks capability {name}")


class StaleDataError(ReserveOracleError):
    """Heartbeat or expiry window exceeded (read path only)"""
    pass


class DeviationError(ReserveOracleError):
    """Price jump exceeds the hard deviation ceiling"""

    def __init__(self, asset: str, old_price: int, new_price: int, deviation_bps: int):
        self.asset = asset
        self.old_price = old_price
        self.new_price = new_price
        self.deviation_bps = deviation_bps
        super().__init__(
            f"{asset}: deviation {deviation_bps}bps exceeds hard ceiling "
            f"(old={old_price}, new={new_price})"
        )


class SignatureError(ReserveOracleError):
    """Signature does not verify against the expected signer"""
    pass


class SourceUnavailableError(ReserveOracleError):
    """Upstream price source unreachable or returned rejected data"""
    pass


class NetworkError(ReserveOracleError):
    """Off-process fetch failed; the prior cache is preserved"""
    pass

class BridgeError(Exception):
    pass


class TransientChainError(BridgeError):
    """
    Network timeout, RPC throttling or chain state that is not final yet.
    Worth retrying with backoff.
    """


class SettlementInFlight(TransientChainError):
    """
    A previously submitted transfer can still land, so a new one must not
    be sent until it either confirms or its blockhash expires.
    """


class PermanentRequestError(BridgeError):
    """
    The request itself can never succeed as submitted (malformed address,
    insufficient authority balance, invalid amount).
    """


class RetriesExhausted(BridgeError):
    pass


class BatchFatalError(BridgeError):
    """
    Store unreachable, authority key unusable or lease lost. Aborts the run.
    """

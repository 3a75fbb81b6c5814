SERVICE_BUSY = "Service busy, please try again later"


class TradeSyncError(Exception):
    pass


class ProviderFetchError(TradeSyncError):
    """One failed provider attempt. Absorbed by the resolver, never shown to the user."""
    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


class AllSourcesExhausted(TradeSyncError):
    def __init__(self, message: str = SERVICE_BUSY):
        super().__init__(message)


class RestFetchError(TradeSyncError):
    def __init__(self, endpoint: str, reason: str):
        super().__init__(f"{endpoint}: {reason}")
        self.endpoint = endpoint
        self.reason = reason


class ChannelError(TradeSyncError):
    pass


class OrderActionError(TradeSyncError):
    pass

class RelayError(Exception):
    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigError(RelayError):
    pass


class QueueUnavailable(RelayError):
    pass


class StateStoreError(RelayError):
    pass


class WebhookDeliveryError(RelayError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

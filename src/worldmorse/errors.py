"""Error codes shared by the relay and its clients."""

CALLSIGN_REQUIRED = "callsign_required"
FROM_CALLSIGN_REQUIRED = "fromCallsign_required"
CHANNEL_REQUIRED = "channel_required"
TYPE_REQUIRED = "type_required"
INVALID_REQUEST = "invalid_request"


class RelayError(Exception):
    """Validation failure reported to the caller with a stable code."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


class RelayClientError(Exception):
    """A relay request failed (error envelope, HTTP error or transport)."""

    def __init__(self, code: str, status: int | None = None):
        super().__init__(f"{code} (HTTP {status})" if status else code)
        self.code = code
        self.status = status

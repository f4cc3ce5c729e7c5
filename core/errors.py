class AssistantError(Exception):
    """Base class for failures that end a conversation turn with a fallback reply."""


class ValidationError(AssistantError):
    pass


class NotFoundError(AssistantError):
    pass


class SchemaViolation(AssistantError):
    pass


class ResolutionError(AssistantError):
    pass


class TransportError(AssistantError):
    pass


class ChainError(AssistantError):
    pass


class InsufficientFunds(ChainError):
    def __init__(self, balance, amount) -> None:
        super().__init__(f"balance {balance} below requested {amount}")
        self.balance = balance
        self.amount = amount


class TransferFailed(ChainError):
    pass

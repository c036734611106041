"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


# Malformed or out-of-range input


class ValidationError(DomainException):
    """Input is malformed or out of the accepted range"""

    pass


class InvalidAmountError(ValidationError):
    """Payment amount is outside the configured bounds"""

    pass


# Missing entities


class NotFoundError(DomainException):
    """Referenced entity does not exist"""

    pass


class AuctionNotFoundError(NotFoundError):
    def __init__(self, auction_id: str):
        self.auction_id = auction_id
        super().__init__("Bidding room not found.")


class TransactionNotFoundError(NotFoundError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


# Auction state conflicts (never retried)


class StateConflictError(DomainException):
    """Request conflicts with the current auction state"""

    pass


class SelfBidError(StateConflictError):
    def __init__(self):
        super().__init__("You cannot bid on your own item.")


class AuctionEndedError(StateConflictError):
    def __init__(self):
        super().__init__("This auction has ended.")


class BidTooLowError(StateConflictError):
    def __init__(self, current_price: int):
        self.current_price = current_price
        super().__init__(f"Bid must be higher than current price: ${current_price}")


# Payment policy denials


class PolicyDeniedError(DomainException):
    """Payment blocked by a velocity, duplicate or fraud policy"""

    pass


class VelocityLimitError(PolicyDeniedError):
    pass


class DuplicateSubmissionError(PolicyDeniedError):
    pass


class FraudRiskError(PolicyDeniedError):
    pass


# Infrastructure


class TransientStoreError(DomainException):
    """Database unavailable; the whole request may be retried"""

    pass


class SettlementIntegrityError(DomainException):
    """Wallet credit failed for a transaction that won settlement"""

    def __init__(self, transaction_id: str, reason: str):
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(f"Settlement of {transaction_id} could not credit wallet: {reason}")


class PaymentGatewayError(DomainException):
    """Payment gateway returned an error or is unavailable"""

    pass


class InvalidGatewayPayloadError(DomainException):
    """Gateway callback data is malformed or its signature does not match"""

    pass

from typing import Any, Optional


class AppException(Exception):
    """Base exception for all application-specific errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Any] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class NotFoundException(AppException):
    """Exception raised when a resource is not found."""

    def __init__(self, message: str = "Resource not found", details: Optional[Any] = None):
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
            details=details,
        )


class ValidationException(AppException):
    """Exception raised when validation fails."""

    def __init__(self, message: str = "Validation failed", details: Optional[Any] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details=details,
        )


class UnauthorizedException(AppException):
    """Exception raised when authentication fails."""

    def __init__(self, message: str = "Unauthorized access", details: Optional[Any] = None):
        super().__init__(
            code="UNAUTHORIZED",
            message=message,
            status_code=401,
            details=details,
        )


class ForbiddenException(AppException):
    """Exception raised when the caller's role does not allow the action."""

    def __init__(self, message: str = "Forbidden", details: Optional[Any] = None):
        super().__init__(
            code="FORBIDDEN",
            message=message,
            status_code=403,
            details=details,
        )


class PlanNotFoundException(AppException):
    def __init__(self, message: str = "Subscription plan not found", details: Optional[Any] = None):
        super().__init__(code="PLAN_NOT_FOUND", message=message, status_code=404, details=details)


class PlanExistsException(AppException):
    def __init__(self, message: str = "A plan with this name or code already exists", details: Optional[Any] = None):
        super().__init__(code="PLAN_EXISTS", message=message, status_code=409, details=details)


class PlanInUseException(AppException):
    """Raised when deleting a plan that subscriptions still reference."""

    def __init__(self, message: str = "This plan is referenced by subscriptions and cannot be deleted", details: Optional[Any] = None):
        super().__init__(code="PLAN_IN_USE", message=message, status_code=409, details=details)


class AlreadySubscribedException(AppException):
    def __init__(self, message: str = "User already has a current subscription", details: Optional[Any] = None):
        super().__init__(code="ALREADY_SUBSCRIBED", message=message, status_code=409, details=details)


class DowngradeNotAllowedException(AppException):
    """Raised when a user with an active plan selects a cheaper or equally priced plan."""

    def __init__(self, message: str = "Downgrading or reselecting a plan of the same price is not allowed", details: Optional[Any] = None):
        super().__init__(code="DOWNGRADE_NOT_ALLOWED", message=message, status_code=409, details=details)


class SubscriptionNotPendingException(AppException):
    def __init__(self, message: str = "Subscription is not awaiting payment", details: Optional[Any] = None):
        super().__init__(code="SUBSCRIPTION_NOT_PENDING", message=message, status_code=409, details=details)


class NotActiveException(AppException):
    def __init__(self, message: str = "Subscription is not active", details: Optional[Any] = None):
        super().__init__(code="NOT_ACTIVE", message=message, status_code=409, details=details)


class PaymentFailedException(AppException):
    """Raised when the payment gateway does not confirm a charge.

    The subscription is left untouched and the payment can be retried.
    """

    def __init__(self, message: str = "Payment could not be confirmed", details: Optional[Any] = None):
        super().__init__(code="PAYMENT_FAILED", message=message, status_code=402, details=details)


class QuotaExceededException(AppException):
    def __init__(self, message: str = "Token quota exceeded", details: Optional[Any] = None):
        super().__init__(code="QUOTA_EXCEEDED", message=message, status_code=429, details=details)


class ConcurrentModificationException(AppException):
    def __init__(self, message: str = "Subscription was modified concurrently, please retry", details: Optional[Any] = None):
        super().__init__(code="CONCURRENT_MODIFICATION", message=message, status_code=409, details=details)


class EmailTakenException(AppException):
    def __init__(self, message: str = "An account with this email already exists", details: Optional[Any] = None):
        super().__init__(code="EMAIL_TAKEN", message=message, status_code=409, details=details)

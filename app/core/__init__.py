"""
Core: building blocks shared across domain packages.

core.exceptions
    BaseApplicationError and the generic kinds the payments taxonomy
    mixes in (ValidationError, NotFoundError, ConflictError,
    ExternalServiceError).

core.services
    ServiceResult, returned where a failure is an expected outcome
    (webhook handlers).
"""

"""Error values for the encrypted document store.

Errors are exception subclasses so they carry a message, a code and an
underlying cause, but services return them inside ``Err`` rather than
raising them. ``raise_http_error`` is the one place they turn into raised
HTTP exceptions.
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException

GENERIC_FAULT_MESSAGE = "An internal error occurred while processing the request."
DEGRADED_SUCCESS_MESSAGE = "The operation succeeded but a follow-up step failed."


class EnvelopeStoreError(Exception):
    """Base error with a stable code and the HTTP status it maps to."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# --- Secret store ---

class SecretStoreError(EnvelopeStoreError):
    code = "SECRET_STORE_FAILURE"


class SecretNotFoundError(SecretStoreError):
    code = "SECRET_NOT_FOUND"
    status_code = 404


class SecretStoreUnavailableError(SecretStoreError):
    code = "SECRET_STORE_UNAVAILABLE"
    status_code = 503


class SecretKeyGeneratorError(SecretStoreError):
    code = "SECRET_KEY_GENERATION_FAILURE"


# --- Encryption ---

class EncryptionError(EnvelopeStoreError):
    code = "ENCRYPTION_FAILURE"


class ObjectMappingError(EncryptionError):
    code = "ENCRYPTION_OBJECT_MAPPING_FAILURE"


class EncryptionSecretError(EncryptionError):
    code = "ENCRYPTION_SECRET_FAILURE"


class CipherError(EncryptionError):
    code = "ENCRYPTION_CIPHER_FAILURE"


class EncodingError(EncryptionError):
    code = "ENCRYPTION_ENCODING_FAILURE"


# --- Hashing ---

class HashError(EnvelopeStoreError):
    code = "HASH_FAILURE"


class HashSecretError(HashError):
    code = "HASH_SECRET_FAILURE"


class HashingError(HashError):
    code = "HASH_HASHING_FAILURE"


class HashEncodingError(HashError):
    code = "HASH_ENCODING_FAILURE"


# --- Documents ---

class DocumentError(EnvelopeStoreError):
    code = "DATABASE_FAILURE"


class DocumentNotFoundError(DocumentError):
    code = "DATABASE_ENTITY_NOT_FOUND"
    status_code = 404


class DocumentDatabaseError(DocumentError):
    code = "DATABASE_FAILURE"


class DocumentEncryptionError(DocumentError):
    code = "DATABASE_ENCRYPTION_FAILURE"


class DocumentHashError(DocumentError):
    code = "DATABASE_HASH_FAILURE"


class PostCommitSideEffectError(DocumentError):
    """The write was committed, a follow-up step was not."""

    code = "POST_DATABASE_COMMIT_SIDE_EFFECT_FAILURE"
    status_code = 207


class DocumentConflictError(DocumentError):
    code = "DATABASE_CONFLICT"
    status_code = 409


class InvalidCriteriaError(DocumentDatabaseError):
    code = "DATABASE_INVALID_CRITERIA"


# --- Rotation ---

class RotationOngoingError(EnvelopeStoreError):
    code = "SECRET_ROTATION_ONGOING"
    status_code = 409


def error_body(error: EnvelopeStoreError) -> Dict[str, Any]:
    """Build the public error body.

    Only 4xx messages of non-secret errors are passed through. Anything else
    may mention key identifiers or ciphertext, so it is replaced by a
    generic message.
    """
    if error.status_code == 207:
        message = DEGRADED_SUCCESS_MESSAGE
    elif 400 <= error.status_code < 500 and not isinstance(error, SecretStoreError):
        message = error.message
    else:
        message = GENERIC_FAULT_MESSAGE
    return {"error": {"code": error.code, "message": message}}


def to_http_exception(error: EnvelopeStoreError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error_body(error))


def raise_http_error(error: EnvelopeStoreError) -> None:
    """Raise a standardized HTTPException for an error value."""
    raise to_http_exception(error)

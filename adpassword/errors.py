"""API error codes and result payloads shared by the controller and the provider"""
from enum import IntEnum


class ApiErrorCode(IntEnum):
    """Error codes surfaced to the client; the integer values are part of the API"""
    GENERIC = 0
    FIELD_REQUIRED = 1
    FIELD_MISMATCH = 2
    USER_NOT_FOUND = 3
    INVALID_CREDENTIALS = 4
    INVALID_CAPTCHA = 5
    CHANGE_NOT_PERMITTED = 6
    INVALID_DOMAIN = 7
    LDAP_PROBLEM = 8
    COMPLEX_PASSWORD = 9
    MINIMUM_SCORE = 10
    MINIMUM_DISTANCE = 11
    PWNED_PASSWORD = 12


DEFAULT_MESSAGES = {
    ApiErrorCode.GENERIC: 'Unhandled error',
    ApiErrorCode.FIELD_REQUIRED: 'Field required',
    ApiErrorCode.FIELD_MISMATCH: 'Field mismatch',
    ApiErrorCode.USER_NOT_FOUND: 'Invalid username',
    ApiErrorCode.INVALID_CREDENTIALS: 'Invalid credentials',
    ApiErrorCode.INVALID_CAPTCHA: 'Invalid reCAPTCHA',
    ApiErrorCode.CHANGE_NOT_PERMITTED: 'Password change not allowed',
    ApiErrorCode.INVALID_DOMAIN: 'Invalid domain',
    ApiErrorCode.LDAP_PROBLEM: 'Connection error with LDAP',
    ApiErrorCode.COMPLEX_PASSWORD: 'The new password does not meet the domain complexity requirements',
    ApiErrorCode.MINIMUM_SCORE: 'The new password is not strong enough',
    ApiErrorCode.MINIMUM_DISTANCE: 'The new password is too similar to the current password',
    ApiErrorCode.PWNED_PASSWORD: 'The new password appears in a list of breached passwords',
}


class ApiErrorItem:
    """A single error entry of an API response"""

    def __init__(self, error_code, message=None, field_name=None):
        self.error_code = ApiErrorCode(error_code)
        self.message = message or DEFAULT_MESSAGES[self.error_code]
        self.field_name = field_name

    def to_dict(self):
        return {
            'errorCode': int(self.error_code),
            'message': self.message,
            'fieldName': self.field_name,
        }

    def __eq__(self, other):
        if not isinstance(other, ApiErrorItem):
            return NotImplemented
        return (self.error_code, self.message, self.field_name) == \
            (other.error_code, other.message, other.field_name)

    def __repr__(self):
        return f'ApiErrorItem({self.error_code.name}, {self.message!r}, {self.field_name!r})'


class ApiResult:
    """Response envelope: a list of errors and an optional payload"""

    def __init__(self, payload=None):
        self.errors = []
        self.payload = payload

    @property
    def has_errors(self):
        return bool(self.errors)

    def add_error(self, error_code, message=None, field_name=None):
        self.errors.append(ApiErrorItem(error_code, message, field_name))
        return self

    def to_dict(self):
        return {
            'errors': [error.to_dict() for error in self.errors],
            'payload': self.payload,
        }

    @classmethod
    def invalid_request(cls):
        return cls().add_error(ApiErrorCode.GENERIC, 'Invalid Request')

    @classmethod
    def invalid_captcha(cls):
        return cls().add_error(ApiErrorCode.INVALID_CAPTCHA)


class ApiErrorException(Exception):
    """Raised for failures that already carry an API error code"""

    def __init__(self, message, error_code=ApiErrorCode.GENERIC):
        super().__init__(message)
        self.error_code = ApiErrorCode(error_code)

    def to_api_error_item(self):
        return ApiErrorItem(self.error_code, str(self))


class PasswordPolicyError(Exception):
    """The directory rejected the new password (complexity, length or history)"""

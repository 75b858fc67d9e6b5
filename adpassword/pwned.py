"""Breach check against the Pwned Passwords k-anonymity range API"""
import hashlib
import logging

import requests

from . import settings

logger = logging.getLogger('ad_password.pwned')


class PwnedPasswordsApiError(Exception):
    """The Pwned Passwords API could not be reached or returned an error status"""


class PwnedPasswordsSearchError(Exception):
    """Unexpected failure while checking a password"""


def is_pwned_password(plaintext, api_url=None, timeout=None):
    """Return True if the password appears in the Pwned Passwords corpus"""
    api_url = (api_url or settings.PWNED_PASSWORDS_API_URL).rstrip('/')
    timeout = timeout or settings.HTTP_TIMEOUT

    try:
        hash_result = hashlib.sha1(plaintext.encode('utf-8')).hexdigest().upper()
        hash_prefix = hash_result[:5]
        hash_suffix = hash_result[5:]

        # Only the first 5 characters of the hash leave this process
        logger.debug(f"Pwned Passwords API request for hash prefix: '{hash_prefix}'")
        response = None
        try:
            response = requests.get(f'{api_url}/range/{hash_prefix}', timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            if response is not None:
                error_message = f"API request failed with status code: {response.status_code}. Error message: {e}"
            else:
                error_message = f"Error calling Pwned Passwords API: {e}"
            logger.warning(error_message)
            raise PwnedPasswordsApiError(error_message) from e

        for line in response.text.splitlines():
            parts = line.strip().split(':')
            if len(parts) == 2 and parts[0].upper() == hash_suffix:
                logger.debug(f"Pwned password found for hash prefix: '{hash_prefix}'")
                return True

        logger.debug(f"Password not found for hash prefix: '{hash_prefix}'")
        return False

    except PwnedPasswordsApiError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error during Pwned Passwords check: {str(e)}")
        raise PwnedPasswordsSearchError("Unexpected error during pwned password check.") from e

"""Google reCAPTCHA server-side verification"""
import logging

import requests

from . import settings

logger = logging.getLogger('ad_password.recaptcha')


def validate_recaptcha(recaptcha_response, private_key=None, verify_url=None, timeout=None):
    """Verify a reCAPTCHA token; always valid when no private key is configured"""
    private_key = settings.RECAPTCHA_PRIVATE_KEY if private_key is None else private_key
    verify_url = verify_url or settings.RECAPTCHA_VERIFY_URL
    timeout = timeout or settings.HTTP_TIMEOUT

    # Skip validation if reCAPTCHA is not enabled
    if not private_key or not private_key.strip():
        return True

    if not recaptcha_response:
        logger.warning("reCAPTCHA is enabled but no response token was provided")
        return False

    response = requests.get(
        verify_url,
        params={'secret': private_key, 'response': recaptcha_response},
        timeout=timeout
    )
    response.raise_for_status()
    validation = response.json()

    if not validation.get('success'):
        logger.warning(f"reCAPTCHA verification rejected: {validation.get('error-codes', [])}")
        return False
    return True

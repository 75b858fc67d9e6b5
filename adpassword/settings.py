"""Application configuration read from the environment (and .env)"""
import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default=False):
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_list(name):
    raw = os.getenv(name)
    if not raw:
        return []
    # Accept both ';' and ',' as separators
    return [item.strip() for item in raw.replace(',', ';').split(';') if item.strip()]


def to_base_dn(raw_base_dn):
    """Convert 'example.com' to 'DC=example,DC=com', leave DNs untouched"""
    if not raw_base_dn:
        return ''
    if 'DC=' in raw_base_dn.upper():
        return raw_base_dn
    return ','.join([f'DC={x}' for x in raw_base_dn.split('.')])


# LDAP Configuration
LDAP_HOSTNAMES = _env_list('LDAP_SERVER')
LDAP_PORT = int(os.getenv('LDAP_PORT', 636))
LDAP_USE_SSL = _env_bool('LDAP_USE_SSL', True)
LDAP_USER = os.getenv('LDAP_USER')
LDAP_DOMAIN = os.getenv('LDAP_DOMAIN')
LDAP_PASSWORD = os.getenv('LDAP_PASSWORD')
LDAP_BASE_DN = to_base_dn(os.getenv('LDAP_BASE_DN') or LDAP_DOMAIN)
LDAP_SEARCH_OUS = [ou.strip() for ou in os.getenv('LDAP_SEARCH_OUS', '').split(';') if ou.strip()]

# Password change policy
DEFAULT_DOMAIN = os.getenv('DEFAULT_DOMAIN', LDAP_DOMAIN or '')
ID_TYPE_FOR_USER = os.getenv('ID_TYPE_FOR_USER', 'userPrincipalName')
ALLOWED_AD_GROUPS = _env_list('ALLOWED_AD_GROUPS')
RESTRICTED_AD_GROUPS = _env_list('RESTRICTED_AD_GROUPS')
UPDATE_LAST_PASSWORD = _env_bool('UPDATE_LAST_PASSWORD', False)
USE_AUTOMATIC_CONTEXT = _env_bool('USE_AUTOMATIC_CONTEXT', False)
CHECK_PWNED_PASSWORDS = _env_bool('CHECK_PWNED_PASSWORDS', True)

# External HTTP services
PWNED_PASSWORDS_API_URL = os.getenv('PWNED_PASSWORDS_API_URL', 'https://api.pwnedpasswords.com')
RECAPTCHA_VERIFY_URL = os.getenv('RECAPTCHA_VERIFY_URL', 'https://www.google.com/recaptcha/api/siteverify')
HTTP_TIMEOUT = int(os.getenv('HTTP_TIMEOUT', 10))

# reCAPTCHA (an empty private key disables the check)
RECAPTCHA_SITE_KEY = os.getenv('RECAPTCHA_SITE_KEY', '')
RECAPTCHA_PRIVATE_KEY = os.getenv('RECAPTCHA_PRIVATE_KEY', '')
RECAPTCHA_LANGUAGE_CODE = os.getenv('RECAPTCHA_LANGUAGE_CODE', 'en')

# Client-side options
MINIMUM_DISTANCE = int(os.getenv('MINIMUM_DISTANCE', 0))
MINIMUM_SCORE = int(os.getenv('MINIMUM_SCORE', 0))
PASSWORD_ENTROPY = int(os.getenv('PASSWORD_ENTROPY', 16))
USE_PASSWORD_GENERATION = _env_bool('USE_PASSWORD_GENERATION', False)
SHOW_PASSWORD_METER = _env_bool('SHOW_PASSWORD_METER', True)
USE_EMAIL = _env_bool('USE_EMAIL', False)
APPLICATION_TITLE = os.getenv('APPLICATION_TITLE', 'Change Account Password | Self-Service Password Change')
CHANGE_PASSWORD_TITLE = os.getenv('CHANGE_PASSWORD_TITLE', 'Change Account Password')
CLIENT_SETTINGS_FILE = os.getenv('CLIENT_SETTINGS_FILE')

# Logging and server
LOG_DIR = os.getenv('LOG_DIR', 'logs')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', 5001))

from flask import Flask, request, jsonify
from flask_cors import CORS
import copy
import json
import logging
import os
from logging.handlers import RotatingFileHandler

from . import settings
from .errors import ApiErrorCode, ApiResult
from .provider import PasswordChangeOptions, PasswordChangeProvider
from .recaptcha import validate_recaptcha
from .strength import generate_password, password_score


# Configure logging
def setup_logger():
    """Configure logger"""
    logger = logging.getLogger('ad_password')
    logger.setLevel(getattr(logging, settings.LOG_LEVEL, logging.INFO))

    # Already configured (module reloaded or imported twice)
    if logger.handlers:
        return logger

    # Create logs directory (if it doesn't exist)
    if not os.path.exists(settings.LOG_DIR):
        os.makedirs(settings.LOG_DIR)

    # Create file handler (max 10MB per file, keep 5 backup files)
    file_handler = RotatingFileHandler(
        os.path.join(settings.LOG_DIR, 'password_change.log'),
        maxBytes=10*1024*1024,
        backupCount=5,
        encoding='utf-8'
    )

    console_handler = logging.StreamHandler()

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger


# Create Flask app and logger
app = Flask(__name__)
CORS(app, resources={r'/api/*': {'origins': '*'}})
logger = setup_logger()

password_change_provider = PasswordChangeProvider(PasswordChangeOptions.from_settings())

REQUIRED_FIELDS = ['username', 'currentPassword', 'newPassword', 'newPasswordVerify']

# Texts shown by the client; CLIENT_SETTINGS_FILE can override any of them
DEFAULT_CLIENT_TEXTS = {
    'changePasswordForm': {
        'helpText': 'If you are having trouble with this tool, please contact IT Support',
        'usernameLabel': 'Username',
        'usernameHelpblock': 'Your organization\'s username',
        'usernameDefaultDomainHelperBlock': 'Your organization\'s username',
        'currentPasswordLabel': 'Current Password',
        'currentPasswordHelpblock': 'Enter your current password',
        'newPasswordLabel': 'New Password',
        'newPasswordHelpblock': 'Choose a strong password',
        'newPasswordVerifyLabel': 'Confirm New Password',
        'newPasswordVerifyHelpblock': 'Enter your new password again',
        'changePasswordButtonLabel': 'Change Password',
    },
    'errorsPasswordForm': {
        'fieldRequired': 'This field is required.',
        'usernamePattern': 'Please enter a valid username.',
        'usernameEmailPattern': 'Please enter a valid email address.',
        'passwordMatch': 'Passwords do not match.',
    },
    'alerts': {
        'successAlertTitle': 'Your password has been changed.',
        'successAlertBody': 'Please note it may take a few hours for your new password to reach all domain controllers.',
        'errorPasswordChangeNotAllowed': 'You are not allowed to change your password. Please contact your system administrator.',
        'errorInvalidCredentials': 'You need to provide the correct current password.',
        'errorInvalidDomain': 'You have supplied an invalid domain to logon to.',
        'errorInvalidUser': 'We could not find your user account.',
        'errorCaptcha': 'Could not verify you are not a robot.',
        'errorFieldRequired': 'Fill in all the fields.',
        'errorFieldMismatch': 'The passwords do not match.',
        'errorComplexPassword': 'Failed due to password complex policies: New password length is shorter than AD minimum password length.',
        'errorConnectionLdap': 'Unhandled error connecting to the LDAP server.',
        'errorScorePassword': 'The password you are trying to set is not secure enough.',
        'errorDistancePassword': 'The password you are trying to set is not different enough from your current password.',
        'errorPwnedPassword': 'The password you are trying to use is publicly known and could be used in dictionary attacks.',
    },
    'validationRegex': {
        'emailRegex': r'^[a-zA-Z0-9.!#$%&\'*+/=?^_`{|}~-]+@[a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)*$',
        'usernameRegex': r'^[a-zA-Z0-9._-]{3,20}$',
    },
}


def _deep_merge(base, overrides):
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def load_client_settings():
    """Build the settings object the client form renders from"""
    client_settings = copy.deepcopy(DEFAULT_CLIENT_TEXTS)
    client_settings.update({
        'applicationTitle': settings.APPLICATION_TITLE,
        'changePasswordTitle': settings.CHANGE_PASSWORD_TITLE,
        'usePasswordGeneration': settings.USE_PASSWORD_GENERATION,
        'showPasswordMeter': settings.SHOW_PASSWORD_METER,
        'useEmail': settings.USE_EMAIL,
        'minimumDistance': settings.MINIMUM_DISTANCE,
        'minimumScore': settings.MINIMUM_SCORE,
        'passwordEntropy': settings.PASSWORD_ENTROPY,
        'recaptcha': {
            'siteKey': settings.RECAPTCHA_SITE_KEY,
            'languageCode': settings.RECAPTCHA_LANGUAGE_CODE,
        },
    })

    if settings.CLIENT_SETTINGS_FILE:
        try:
            with open(settings.CLIENT_SETTINGS_FILE, encoding='utf-8') as f:
                _deep_merge(client_settings, json.load(f))
        except (OSError, ValueError) as e:
            logger.error(f"Could not load client settings from {settings.CLIENT_SETTINGS_FILE}: {str(e)}")

    # Never hand the private key to the browser
    client_settings.get('recaptcha', {}).pop('privateKey', None)
    return client_settings


def bad_request(result):
    return jsonify(result.to_dict()), 400


@app.route('/api/password', methods=['GET'])
def get_client_settings():
    """Return the client settings"""
    return jsonify(load_client_settings())


@app.route('/api/password/generated', methods=['GET'])
def get_generated_password():
    """Return a randomly generated password"""
    return jsonify({'password': generate_password(settings.PASSWORD_ENTROPY)})


@app.route('/api/password', methods=['POST'])
def change_password():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        logger.warning("Invalid model, request body is not a JSON object")
        return bad_request(ApiResult.invalid_request())

    username = data.get('username')
    current_password = data.get('currentPassword')
    new_password = data.get('newPassword')

    if new_password != data.get('newPasswordVerify'):
        logger.warning("Invalid model, passwords don't match")
        return bad_request(ApiResult().add_error(ApiErrorCode.FIELD_MISMATCH, field_name='newPasswordVerify'))

    # Validate the model
    result = ApiResult()
    for field_name in REQUIRED_FIELDS:
        value = data.get(field_name)
        if not isinstance(value, str) or not value.strip():
            result.add_error(ApiErrorCode.FIELD_REQUIRED, field_name=field_name)
    if result.has_errors:
        logger.warning(f"Invalid model, validation failed: {[e.field_name for e in result.errors]}")
        return bad_request(result)

    logger.info(f"Received password change request: username={username}")

    # Validate the Captcha
    try:
        if not validate_recaptcha(data.get('recaptcha')):
            raise ValueError("Invalid Recaptcha response")
    except Exception as e:
        logger.warning(f"Invalid Recaptcha for user {username}: {str(e)}")
        return bad_request(ApiResult.invalid_captcha())

    try:
        if settings.MINIMUM_DISTANCE > 0 and \
                password_change_provider.measure_new_password_distance(current_password, new_password) < settings.MINIMUM_DISTANCE:
            logger.warning(f"New password for {username} is too close to the current one")
            return bad_request(result.add_error(ApiErrorCode.MINIMUM_DISTANCE))

        if settings.MINIMUM_SCORE > 0 and password_score(new_password) < settings.MINIMUM_SCORE:
            logger.warning(f"New password for {username} does not reach the minimum score")
            return bad_request(result.add_error(ApiErrorCode.MINIMUM_SCORE))

        error_item = password_change_provider.perform_password_change(username, current_password, new_password)
        if error_item is None:
            logger.info(f"Password change successful: username={username}")
            return jsonify(result.to_dict())

        result.errors.append(error_item)
        logger.warning(f"Password change failed: username={username}, code={error_item.error_code.name}")
    except Exception as e:
        logger.error(f"Failed to update password for {username}: {str(e)}", exc_info=True)
        result.add_error(ApiErrorCode.GENERIC, str(e))

    return bad_request(result)


def main():
    """Start the application"""
    logger.info("Password change service started")
    app.run(host=settings.HOST, port=settings.PORT)


if __name__ == '__main__':
    main()

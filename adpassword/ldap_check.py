#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
LDAP connection and user lookup check.
Used to diagnose AD connectivity and password change policy for a user.
"""

import logging
import sys

from ldap3.core.exceptions import LDAPException

from .provider import DirectoryConnection, PasswordChangeOptions, PasswordChangeProvider

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger('ad_password.ldap_check')


def describe_user(provider, conn, username):
    """Log what the password change pipeline would see for this user"""
    fixed_username = provider.fix_username_with_domain(username)
    logger.info(f"=== Searching user: {fixed_username} ===")

    user_entry = provider.find_user(conn, fixed_username)
    if user_entry is None:
        logger.warning(f"User not found in any search base: {fixed_username}")
        return False

    logger.info(f"  DN: {user_entry.entry_dn}")
    logger.info(f"  Groups: {', '.join(provider.get_user_groups(conn, user_entry)) or '(none)'}")
    logger.info(f"  Cannot change password: {provider.user_cannot_change_password(user_entry)}")
    return True


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    options = PasswordChangeOptions.from_settings()
    provider = PasswordChangeProvider(options)

    logger.info("=== Testing LDAP connection ===")
    logger.info(f"LDAP servers: {options.ldap_hostnames}, port {options.ldap_port}")
    logger.info(f"LDAP domain: {options.ldap_domain}, Base DN: {options.base_dn}")

    try:
        with DirectoryConnection(options) as conn:
            logger.info("LDAP connection successful!")
            logger.info(f"Domain minimum password length: {provider.acquire_domain_password_length(conn)}")

            if argv:
                return 0 if describe_user(provider, conn, argv[0]) else 1

            logger.info("To check a specific user, pass the username: adpassword-ldap-check <username>")
            return 0
    except (LDAPException, ValueError) as e:
        logger.error(f"LDAP connection test failed: {str(e)}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Active Directory password change provider built on ldap3"""
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import ldap3
from ldap3.core.exceptions import LDAPBindError, LDAPException, LDAPNoSuchObjectResult
from ldap3.utils.conv import escape_bytes, escape_filter_chars
from ldap3.utils.dn import parse_dn

from . import settings
from .errors import ApiErrorCode, ApiErrorException, ApiErrorItem, PasswordPolicyError
from .pwned import is_pwned_password
from .strength import levenshtein_distance

logger = logging.getLogger('ad_password.provider')

DEFAULT_MIN_PASSWORD_LENGTH = 6

# userAccountControl flag: the user cannot change the password
UF_PASSWD_CANT_CHANGE = 0x0040

# AD bind sub-codes ("data XXX" in the diagnostic message) that still prove the password is right
ERROR_PASSWORD_EXPIRED = '532'
ERROR_PASSWORD_MUST_CHANGE = '773'

# LDAP_MATCHING_RULE_IN_CHAIN, resolves nested group membership
IN_CHAIN_RULE = '1.2.840.113556.1.4.1941'

USER_ATTRIBUTES = [
    'distinguishedName',
    'userPrincipalName',
    'sAMAccountName',
    'userAccountControl',
    'pwdLastSet',
    'memberOf',
    'objectSid',
    'primaryGroupID',
]

ID_TYPE_ALIASES = {
    'distinguishedName': ('distinguishedname', 'distinguished name', 'dn'),
    'objectGUID': ('globally unique identifier', 'globallyuniqueidentifier', 'guid'),
    'name': ('name', 'nm'),
    'sAMAccountName': ('samaccountname', 'accountname', 'sam account', 'sam account name', 'sam'),
    'objectSid': ('securityidentifier', 'securityid', 'secid', 'security identifier', 'sid'),
}


def resolve_id_type(raw_id_type):
    """Map a configured identity type name to the LDAP attribute used for lookups"""
    value = (raw_id_type or '').strip().lower()
    for attribute, aliases in ID_TYPE_ALIASES.items():
        if value in aliases:
            return attribute
    return 'userPrincipalName'


@dataclass
class PasswordChangeOptions:
    """Settings consumed by the provider"""
    ldap_hostnames: list = field(default_factory=list)
    ldap_port: int = 636
    ldap_use_ssl: bool = True
    ldap_username: str = None
    ldap_password: str = None
    ldap_domain: str = None
    base_dn: str = ''
    search_ous: list = field(default_factory=list)
    default_domain: str = ''
    id_type_for_user: str = 'userPrincipalName'
    allowed_ad_groups: list = field(default_factory=list)
    restricted_ad_groups: list = field(default_factory=list)
    update_last_password: bool = False
    use_automatic_context: bool = False
    check_pwned_passwords: bool = True

    @classmethod
    def from_settings(cls):
        return cls(
            ldap_hostnames=settings.LDAP_HOSTNAMES,
            ldap_port=settings.LDAP_PORT,
            ldap_use_ssl=settings.LDAP_USE_SSL,
            ldap_username=settings.LDAP_USER,
            ldap_password=settings.LDAP_PASSWORD,
            ldap_domain=settings.LDAP_DOMAIN,
            base_dn=settings.LDAP_BASE_DN,
            search_ous=settings.LDAP_SEARCH_OUS,
            default_domain=settings.DEFAULT_DOMAIN,
            id_type_for_user=settings.ID_TYPE_FOR_USER,
            allowed_ad_groups=settings.ALLOWED_AD_GROUPS,
            restricted_ad_groups=settings.RESTRICTED_AD_GROUPS,
            update_last_password=settings.UPDATE_LAST_PASSWORD,
            use_automatic_context=settings.USE_AUTOMATIC_CONTEXT,
            check_pwned_passwords=settings.CHECK_PWNED_PASSWORDS,
        )

    @property
    def service_account(self):
        if not self.ldap_username:
            return None
        # Already UPN or DOMAIN\user
        if '@' in self.ldap_username or '\\' in self.ldap_username or not self.ldap_domain:
            return self.ldap_username
        return f'{self.ldap_username}@{self.ldap_domain}'


def build_server(options):
    """Create the ldap3 Server for the first configured host (or the domain in automatic context)"""
    if options.ldap_hostnames:
        host = options.ldap_hostnames[0]
    elif options.use_automatic_context and options.ldap_domain:
        host = options.ldap_domain
    else:
        logger.warning("LDAP hostnames are not configured and automatic context is disabled")
        raise ValueError("LDAP Hostnames are not configured.")

    logger.debug(f"Using LDAP server: {host}:{options.ldap_port}, SSL={options.ldap_use_ssl}")
    return ldap3.Server(
        host,
        port=options.ldap_port,
        use_ssl=options.ldap_use_ssl,
        connect_timeout=10,
        get_info=ldap3.ALL
    )


class DirectoryConnection:
    """Bound LDAP connection context manager, retrying the bind with backoff"""

    max_retries = 3
    retry_delay = 2

    def __init__(self, options):
        self.options = options
        self.server = build_server(options)
        self.conn = None

    def _new_connection(self):
        if self.options.use_automatic_context:
            logger.debug("Using automatic domain context (Kerberos)")
            return ldap3.Connection(
                self.server,
                authentication=ldap3.SASL,
                sasl_mechanism=ldap3.KERBEROS,
                auto_bind=False
            )
        return ldap3.Connection(
            self.server,
            user=self.options.service_account,
            password=self.options.ldap_password,
            auto_bind=False
        )

    def __enter__(self):
        retry_count = 0
        retry_delay = self.retry_delay

        while True:
            try:
                self.conn = self._new_connection()
                if self.conn.bind():
                    logger.debug("LDAP connection binding successful")
                    return self.conn
                logger.error(f"LDAP binding failed: {self.conn.result}")
            except LDAPException as e:
                logger.error(f"LDAP connection exception: {str(e)}")
            self._discard()

            retry_count += 1
            if retry_count >= self.max_retries:
                logger.error("LDAP connection retries exhausted")
                raise LDAPBindError(f"LDAP binding failed after {self.max_retries} retries")
            logger.info(f"Attempting LDAP reconnect {retry_count}, waiting {retry_delay} seconds")
            time.sleep(retry_delay)
            retry_delay *= 2

    def _discard(self):
        # Close the socket left open by a failed bind
        if self.conn is not None:
            try:
                self.conn.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring unbind error on failed connection: {str(e)}")
            self.conn = None

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.conn:
            self.conn.unbind()


def _attr_value(entry, name):
    attribute = getattr(entry, name, None)
    if attribute is None:
        return None
    return attribute.value


def _attr_values(entry, name):
    attribute = getattr(entry, name, None)
    if attribute is None or not attribute.values:
        return []
    return list(attribute.values)


def group_name(group_dn):
    """Common name of a group from its DN"""
    try:
        return parse_dn(group_dn)[0][1]
    except LDAPException:
        return group_dn


def _password_never_set(pwd_last_set):
    # 0 (formatted by ldap3 as 1601-01-01) means "must change at next logon"
    if pwd_last_set is None:
        return True
    if isinstance(pwd_last_set, datetime):
        return pwd_last_set.year <= 1601
    try:
        return int(pwd_last_set) == 0
    except (TypeError, ValueError):
        return False


class PasswordChangeProvider:
    """Validates and performs a self-service password change against Active Directory"""

    def __init__(self, options, pwned_checker=None):
        self.options = options
        self.id_type = resolve_id_type(options.id_type_for_user)
        self.is_pwned = pwned_checker or is_pwned_password
        logger.debug(f"Identity type set to '{self.id_type}'")

    def perform_password_change(self, username, current_password, new_password):
        """Run the ordered validations and change the password; returns None on success"""
        error_item = None
        try:
            fixed_username = self.fix_username_with_domain(username)
            logger.info(f"Performing password change for user '{fixed_username}'")

            with DirectoryConnection(self.options) as conn:
                user_entry = self.find_user(conn, fixed_username)
                if user_entry is None:
                    logger.warning(f"User principal '{fixed_username}' not found")
                    return ApiErrorItem(ApiErrorCode.USER_NOT_FOUND)

                error_item = self._validate_new_password_length(conn, new_password)
                if error_item:
                    return error_item

                error_item = self._validate_pwned_password(new_password)
                if error_item:
                    return error_item

                error_item = self._validate_groups_membership(conn, user_entry)
                if error_item:
                    return error_item

                error_item = self._validate_password_change_permissions(user_entry)
                if error_item:
                    return error_item

                if self.options.update_last_password and _password_never_set(_attr_value(user_entry, 'pwdLastSet')):
                    error_item = self._set_last_password(conn, user_entry)
                    if error_item:
                        return error_item

                if not self.validate_user_credentials(user_entry, fixed_username, current_password):
                    logger.warning(f"Invalid current password provided for user '{fixed_username}'")
                    return ApiErrorItem(ApiErrorCode.INVALID_CREDENTIALS)

                self._update_password(conn, user_entry.entry_dn, current_password, new_password)
                logger.info(f"Password successfully updated for user '{fixed_username}'")

        except PasswordPolicyError as e:
            error_item = ApiErrorItem(ApiErrorCode.COMPLEX_PASSWORD, str(e))
            logger.warning(f"Password change failed due to complexity policies: {str(e)}")
        except ApiErrorException as e:
            error_item = e.to_api_error_item()
            logger.warning(f"Password change failed due to API error: {str(e)}")
        except Exception as e:
            message = str(e.__cause__ or e)
            error_item = ApiErrorItem(ApiErrorCode.GENERIC, message)
            logger.error(f"Password change failed due to an unexpected error: {message}", exc_info=True)

        return error_item

    def measure_new_password_distance(self, current_password, new_password):
        return levenshtein_distance(current_password or '', new_password or '')

    def fix_username_with_domain(self, username):
        """Append the default domain to bare usernames when looking users up by UPN"""
        if self.id_type != 'userPrincipalName':
            return username
        parts = [part for part in username.split('@') if part]
        if len(parts) > 1 or not (self.options.default_domain or '').strip():
            return username
        return f'{username}@{self.options.default_domain}'

    def _user_filter(self, username):
        if self.id_type == 'objectGUID':
            try:
                value = escape_bytes(uuid.UUID(username).bytes_le)
            except ValueError:
                raise ApiErrorException(f"'{username}' is not a valid GUID", ApiErrorCode.USER_NOT_FOUND)
        else:
            value = escape_filter_chars(username)
        return f'(&(objectClass=user)(objectCategory=person)({self.id_type}={value}))'

    def search_bases(self):
        if self.options.search_ous:
            return self.options.search_ous
        return [self.options.base_dn]

    def find_user(self, conn, username):
        """Return the first matching user entry across the search bases, or None"""
        search_filter = self._user_filter(username)

        for search_base in self.search_bases():
            try:
                logger.debug(f"Searching for user '{username}' in '{search_base}'")
                success = conn.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=ldap3.SUBTREE,
                    attributes=USER_ATTRIBUTES
                )
                if success and conn.entries:
                    if len(conn.entries) > 1:
                        logger.warning(f"Multiple users found for '{username}' in '{search_base}', using {conn.entries[0].entry_dn}")
                    return conn.entries[0]
            except LDAPNoSuchObjectResult:
                logger.warning(f"Search base '{search_base}' does not exist")
        return None

    def acquire_domain_password_length(self, conn):
        """Read minPwdLength from the domain object, defaulting to 6"""
        try:
            success = conn.search(
                search_base=self.options.base_dn,
                search_filter='(objectClass=*)',
                search_scope=ldap3.BASE,
                attributes=['minPwdLength']
            )
            value = _attr_value(conn.entries[0], 'minPwdLength') if success and conn.entries else None
            if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
                return int(value)
            logger.warning(f"Could not retrieve 'minPwdLength' from Active Directory. Defaulting to {DEFAULT_MIN_PASSWORD_LENGTH}.")
        except LDAPException as e:
            logger.error(f"Error retrieving domain password length policy: {str(e)}. Defaulting to {DEFAULT_MIN_PASSWORD_LENGTH}.")
        return DEFAULT_MIN_PASSWORD_LENGTH

    def _validate_new_password_length(self, conn, new_password):
        min_password_length = self.acquire_domain_password_length(conn)
        if len(new_password) < min_password_length:
            logger.error("New password length is shorter than the Active Directory minimum password length")
            return ApiErrorItem(ApiErrorCode.COMPLEX_PASSWORD)
        return None

    def _validate_pwned_password(self, new_password):
        if not self.options.check_pwned_passwords:
            return None
        if self.is_pwned(new_password):
            logger.error("New password is a known compromised password and is not allowed")
            return ApiErrorItem(ApiErrorCode.PWNED_PASSWORD)
        return None

    def _direct_groups(self, conn, user_dn):
        success = conn.search(
            search_base=user_dn,
            search_filter='(objectClass=*)',
            search_scope=ldap3.BASE,
            attributes=['memberOf']
        )
        if not success or not conn.entries:
            raise LDAPException(f"memberOf lookup failed: {conn.result}")
        return [group_name(dn) for dn in _attr_values(conn.entries[0], 'memberOf')]

    def _authorization_groups(self, conn, user_dn):
        success = conn.search(
            search_base=self.options.base_dn,
            search_filter=f'(&(objectClass=group)(member:{IN_CHAIN_RULE}:={escape_filter_chars(user_dn)}))',
            search_scope=ldap3.SUBTREE,
            attributes=['cn']
        )
        if not success:
            raise LDAPException(f"Nested group lookup failed: {conn.result}")
        return [_attr_value(entry, 'cn') for entry in conn.entries]

    def _primary_group(self, conn, user_entry):
        """CN of the user's primary group, which memberOf never lists"""
        user_sid = _attr_value(user_entry, 'objectSid')
        primary_group_id = _attr_value(user_entry, 'primaryGroupID')
        if not user_sid or primary_group_id is None:
            return None

        # Same domain SID as the user, with the group's RID
        group_sid = f"{str(user_sid).rsplit('-', 1)[0]}-{int(primary_group_id)}"
        success = conn.search(
            search_base=self.options.base_dn,
            search_filter=f'(&(objectClass=group)(objectSid={escape_filter_chars(group_sid)}))',
            search_scope=ldap3.SUBTREE,
            attributes=['cn']
        )
        if not success:
            raise LDAPException(f"Primary group lookup failed for {group_sid}: {conn.result}")
        return _attr_value(conn.entries[0], 'cn') if conn.entries else None

    def get_user_groups(self, conn, user_entry):
        """Group names of the user, falling back to transitive membership when memberOf fails"""
        try:
            groups = self._direct_groups(conn, user_entry.entry_dn)
        except Exception as e:
            logger.error(f"Error retrieving user groups from memberOf. Falling back to nested membership lookup. {str(e)}")
            groups = self._authorization_groups(conn, user_entry.entry_dn)

        primary_group = self._primary_group(conn, user_entry)
        if primary_group and primary_group not in groups:
            groups.append(primary_group)
        return groups

    def _validate_groups_membership(self, conn, user_entry):
        try:
            groups = {name.lower() for name in self.get_user_groups(conn, user_entry) if name}
            restricted = {name.lower() for name in self.options.restricted_ad_groups}
            allowed = {name.lower() for name in self.options.allowed_ad_groups}

            if restricted and groups & restricted:
                return ApiErrorItem(
                    ApiErrorCode.CHANGE_NOT_PERMITTED,
                    "User is a member of a restricted group and password change is not permitted."
                )

            # No allowed groups configured means everyone outside the restricted groups may change
            if allowed and not groups & allowed:
                return ApiErrorItem(
                    ApiErrorCode.CHANGE_NOT_PERMITTED,
                    "User is not a member of any allowed group and password change is not permitted."
                )
            return None
        except Exception as e:
            logger.error(f"Error during group membership validation: {str(e)}")
            return ApiErrorItem(ApiErrorCode.GENERIC, "Error during group membership validation.")

    def user_cannot_change_password(self, user_entry):
        flags = _attr_value(user_entry, 'userAccountControl')
        try:
            return bool(int(flags or 0) & UF_PASSWD_CANT_CHANGE)
        except (TypeError, ValueError):
            return False

    def _validate_password_change_permissions(self, user_entry):
        if self.user_cannot_change_password(user_entry):
            logger.warning("User is not permitted to change their password")
            return ApiErrorItem(ApiErrorCode.CHANGE_NOT_PERMITTED)
        return None

    def _set_last_password(self, conn, user_entry):
        if _attr_value(user_entry, 'pwdLastSet') is None:
            logger.warning("The 'pwdLastSet' property is missing on the user principal")
            return ApiErrorItem(ApiErrorCode.GENERIC, "The 'pwdLastSet' property is missing on the user principal.")

        try:
            # -1 stamps the current time, clearing "must change at next logon"
            if not conn.modify(user_entry.entry_dn, {'pwdLastSet': [(ldap3.MODIFY_REPLACE, ['-1'])]}):
                raise LDAPException(str(conn.result))
            logger.info("The 'pwdLastSet' attribute was successfully updated")
            return None
        except LDAPException as e:
            logger.error(f"Failed to update 'pwdLastSet' attribute: {str(e)}")
            return ApiErrorItem(ApiErrorCode.CHANGE_NOT_PERMITTED, "Failed to update 'pwdLastSet' attribute.")

    def _try_bind(self, user, password, authentication=ldap3.SIMPLE):
        """Bind as the user; returns (bound, result)"""
        conn = ldap3.Connection(
            build_server(self.options),
            user=user,
            password=password,
            authentication=authentication,
            auto_bind=False
        )
        try:
            return conn.bind(), conn.result
        except (LDAPException, ValueError) as e:
            # ValueError: NTLM needs MD4, which OpenSSL 3 may not provide
            logger.debug(f"Bind raised for '{user}': {str(e)}")
            return False, {'message': str(e)}
        finally:
            conn.unbind()

    def validate_user_credentials(self, user_entry, fixed_username, current_password):
        """Check the current password, treating expired or must-change passwords as valid"""
        if not current_password:
            return False

        upn = _attr_value(user_entry, 'userPrincipalName') or fixed_username
        bound, result = self._try_bind(upn, current_password)
        if bound:
            return True

        sam = _attr_value(user_entry, 'sAMAccountName')
        if sam and self.options.ldap_domain:
            bound, ntlm_result = self._try_bind(f'{self.options.ldap_domain}\\{sam}', current_password, ldap3.NTLM)
            if bound:
                return True
            result = result if result and result.get('message') else ntlm_result

        match = re.search(r'data ([0-9a-fA-F]+)', (result or {}).get('message') or '')
        error_code = match.group(1).lower() if match else None
        logger.debug(f"Credential validation bind sub-code {error_code}")
        return error_code in (ERROR_PASSWORD_MUST_CHANGE, ERROR_PASSWORD_EXPIRED)

    def _raise_for_result(self, conn, operation):
        result = conn.result or {}
        message = result.get('message') or ''
        description = result.get('description') or 'unknown error'
        # 0000052D: constraint violation on the new password (complexity, length or history)
        if '52D' in message.upper() or result.get('result') == 19:
            raise PasswordPolicyError(message or description)
        raise LDAPException(f"Password {operation} failed: {description}. {message}".strip())

    def _change_password(self, conn, user_dn, current_password, new_password):
        if not conn.extend.microsoft.modify_password(user_dn, new_password, old_password=current_password):
            self._raise_for_result(conn, 'change')

    def _reset_password(self, conn, user_dn, new_password):
        if not conn.extend.microsoft.modify_password(user_dn, new_password):
            self._raise_for_result(conn, 'reset')

    def _update_password(self, conn, user_dn, current_password, new_password):
        try:
            self._change_password(conn, user_dn, current_password, new_password)
        except Exception as change_error:
            if self.options.use_automatic_context:
                logger.warning(f"Password change failed with automatic context enabled. Password update aborted. {str(change_error)}")
                raise

            try:
                self._reset_password(conn, user_dn, new_password)
                logger.debug(f"Password updated using reset after change failure: {str(change_error)}")
            except Exception as reset_error:
                logger.error(f"Password reset failed after change failure. Password update failed. {str(reset_error)}")
                raise

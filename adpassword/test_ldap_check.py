from unittest.mock import MagicMock, patch

from ldap3.core.exceptions import LDAPBindError

from .ldap_check import main


@patch('adpassword.ldap_check.PasswordChangeProvider')
@patch('adpassword.ldap_check.DirectoryConnection')
def test_ldap_check_connection_only(MockDirectory, MockProvider):
    MockProvider.return_value.acquire_domain_password_length.return_value = 8

    assert main([]) == 0
    MockDirectory.return_value.__enter__.assert_called_once()
    MockProvider.return_value.find_user.assert_not_called()


@patch('adpassword.ldap_check.PasswordChangeProvider')
@patch('adpassword.ldap_check.DirectoryConnection')
def test_ldap_check_describes_user(MockDirectory, MockProvider):
    provider = MockProvider.return_value
    provider.fix_username_with_domain.return_value = 'jdoe@example.com'
    provider.find_user.return_value = MagicMock(entry_dn='CN=John Doe,DC=example,DC=com')
    provider.get_user_groups.return_value = ['Staff']
    provider.user_cannot_change_password.return_value = False

    assert main(['jdoe']) == 0
    conn = MockDirectory.return_value.__enter__.return_value
    provider.find_user.assert_called_once_with(conn, 'jdoe@example.com')


@patch('adpassword.ldap_check.PasswordChangeProvider')
@patch('adpassword.ldap_check.DirectoryConnection')
def test_ldap_check_user_not_found(MockDirectory, MockProvider):
    MockProvider.return_value.find_user.return_value = None
    assert main(['ghost']) == 1


@patch('adpassword.ldap_check.PasswordChangeProvider')
@patch('adpassword.ldap_check.DirectoryConnection')
def test_ldap_check_bind_failure(MockDirectory, MockProvider):
    MockDirectory.return_value.__enter__.side_effect = LDAPBindError("LDAP binding failed after 3 retries")
    assert main([]) == 1

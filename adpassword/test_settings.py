import pytest

from .settings import to_base_dn


@pytest.mark.parametrize('raw, expected', [
    ('example.com', 'DC=example,DC=com'),
    ('corp.example.com', 'DC=corp,DC=example,DC=com'),
    ('DC=example,DC=com', 'DC=example,DC=com'),
    ('dc=example,dc=com', 'dc=example,dc=com'),
    ('', ''),
    (None, ''),
])
def test_to_base_dn(raw, expected):
    assert to_base_dn(raw) == expected

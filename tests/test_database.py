"""
Tests for database URL handling
"""
import pytest

from database import async_database_url


@pytest.mark.parametrize(
    "url,expected",
    [
        ("postgres://u:p@db:5432/paywall", "postgresql+asyncpg://u:p@db:5432/paywall"),
        ("postgresql://u:p@db:5432/paywall", "postgresql+asyncpg://u:p@db:5432/paywall"),
        ("postgresql+asyncpg://u:p@db/paywall", "postgresql+asyncpg://u:p@db/paywall"),
        ("sqlite+aiosqlite:///./paywall.db", "sqlite+aiosqlite:///./paywall.db"),
    ],
)
def test_async_database_url(url, expected):
    assert async_database_url(url) == expected

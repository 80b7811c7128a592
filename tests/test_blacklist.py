"""Access-token blacklist and bearer codec."""

from datetime import timedelta

import pytest

from estatevault.service.blacklist import TokenBlacklist
from estatevault.service.tokens import BearerTokenCodec, extract_bearer, token_digest
from estatevault.storage.models import BlacklistReason, TokenKind


class FlakyCache:
    """Redis stand-in whose reads fail, to prove the store is still consulted."""

    def __init__(self):
        self.written = {}

    async def blacklist_token(self, digest, expires_at):
        self.written[digest] = expires_at

    async def is_token_blacklisted(self, digest):
        raise ConnectionError("redis unavailable")


@pytest.fixture
def blacklist(store, clock):
    return TokenBlacklist(store, grace=timedelta(hours=24), clock=clock)


async def test_blacklisted_token_is_rejected(blacklist, clock):
    expires = clock.now + timedelta(minutes=15)
    assert await blacklist.blacklist("tok-1", TokenKind.ACCESS, "acct", BlacklistReason.LOGOUT, expires)
    assert await blacklist.is_blacklisted("tok-1")
    assert not await blacklist.is_blacklisted("tok-2")


async def test_duplicate_insert_is_reported(blacklist, clock):
    expires = clock.now + timedelta(minutes=15)
    await blacklist.blacklist("tok", TokenKind.ACCESS, "acct", BlacklistReason.LOGOUT, expires)
    again = await blacklist.blacklist(
        "tok", TokenKind.ACCESS, "acct", BlacklistReason.ADMIN_ACTION, expires
    )
    assert again is False


async def test_purge_waits_for_grace_period(blacklist, store, clock):
    expires = clock.now + timedelta(minutes=15)
    await blacklist.blacklist("tok", TokenKind.ACCESS, "acct", BlacklistReason.LOGOUT, expires)
    clock.advance(hours=12)
    assert blacklist.purge() == 0
    clock.advance(hours=13)
    assert blacklist.purge() == 1
    assert store.get_blacklist_entry(token_digest("tok")) is None


async def test_cache_failure_falls_back_to_store(store, clock):
    cache = FlakyCache()
    blacklist = TokenBlacklist(store, cache, clock=clock)
    expires = clock.now + timedelta(minutes=15)
    await blacklist.blacklist("tok", TokenKind.ACCESS, "acct", BlacklistReason.LOGOUT, expires)
    assert token_digest("tok") in cache.written
    assert await blacklist.is_blacklisted("tok")


class TestBearerTokenCodec:
    def test_issue_and_read_claims(self, settings, make_account, clock):
        codec = BearerTokenCodec(settings, clock=clock)
        account = make_account()
        token, expires_at = codec.issue(account, "sess-9", TokenKind.ACCESS, timedelta(minutes=15))
        claims = codec.claims(token, TokenKind.ACCESS)
        assert claims.account_id == account.id
        assert claims.session_id == "sess-9"
        assert claims.role == "investor"
        assert claims.expires_at == expires_at

    def test_kind_mismatch_is_rejected(self, settings, make_account, clock):
        codec = BearerTokenCodec(settings, clock=clock)
        token, _ = codec.issue(make_account(), "s", TokenKind.REFRESH, timedelta(days=1))
        assert codec.claims(token, TokenKind.ACCESS) is None

    def test_tampered_signature_is_rejected(self, settings, make_account, clock):
        codec = BearerTokenCodec(settings, clock=clock)
        token, _ = codec.issue(make_account(), "s", TokenKind.ACCESS, timedelta(minutes=5))
        head, payload, sig = token.split(".")
        forged = f"{head}.{payload}.{'A' if sig[0] != 'A' else 'B'}{sig[1:]}"
        assert codec.claims(forged, TokenKind.ACCESS) is None

    def test_expired_beyond_leeway_is_rejected(self, settings, make_account, clock):
        codec = BearerTokenCodec(settings, clock=clock)
        token, _ = codec.issue(make_account(), "s", TokenKind.ACCESS, timedelta(minutes=5))
        clock.advance(minutes=8)
        assert codec.claims(token, TokenKind.ACCESS) is None

    def test_garbage_is_rejected(self, settings):
        codec = BearerTokenCodec(settings)
        assert codec.decode("not-a-jwt") is None
        assert codec.decode("a.b.c") is None


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Bearer abc", "abc"),
        ("bearer   xyz ", "xyz"),
        ("Basic abc", None),
        ("Bearer ", None),
        (None, None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected

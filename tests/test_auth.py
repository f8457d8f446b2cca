import time

import jwt
import pytest

from tictactoe.auth import IdentityVerifier, identity_from_claims, sanitize_display_name
from tictactoe.errors import AuthenticationError

SECRET = "auth-secret"


def test_sanitize_display_name():
    assert sanitize_display_name("Ada Lovelace!") == "Ada Lovelace"
    assert sanitize_display_name("x") is None
    assert sanitize_display_name("") is None
    assert sanitize_display_name("a" * 40) == "a" * 20


def test_claims_mapping_prefers_nickname_then_email():
    ident = identity_from_claims({"sub": "abc", "nickname": "neo", "name": "Thomas Anderson"})
    assert ident.user_id == "abc" and ident.display_name == "neo"
    ident = identity_from_claims({"sub": "abc", "email": "trinity@example.com"})
    assert ident.display_name == "trinity"
    assert not ident.is_anonymous
    with pytest.raises(AuthenticationError):
        identity_from_claims({"name": "nobody"})


def test_verify_valid_expired_and_tampered_tokens():
    v = IdentityVerifier(secret=SECRET)
    good = jwt.encode({"sub": "u1", "name": "Alice", "exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
    assert v.verify(good).user_id == "u1"

    expired = jwt.encode({"sub": "u1", "exp": int(time.time()) - 60}, SECRET, algorithm="HS256")
    with pytest.raises(AuthenticationError, match="expired"):
        v.verify(expired)

    forged = jwt.encode({"sub": "u1"}, "not-the-secret", algorithm="HS256")
    with pytest.raises(AuthenticationError, match="Invalid"):
        v.verify(forged)


def test_audience_is_checked_when_configured():
    v = IdentityVerifier(secret=SECRET, audience="tictactoe")
    ok = jwt.encode({"sub": "u1", "aud": "tictactoe"}, SECRET, algorithm="HS256")
    assert v.verify(ok).user_id == "u1"
    other = jwt.encode({"sub": "u1", "aud": "chess"}, SECRET, algorithm="HS256")
    with pytest.raises(AuthenticationError):
        v.verify(other)


def test_anonymous_rules():
    v = IdentityVerifier(secret=SECRET)
    ident = v.verify("", "  alice ")
    assert ident.is_anonymous and ident.display_name == "alice"
    with pytest.raises(AuthenticationError):
        v.verify(None)
    with pytest.raises(AuthenticationError, match="required"):
        IdentityVerifier(secret=SECRET, allow_anonymous=False).verify("", "alice")


def test_token_login_needs_a_secret():
    with pytest.raises(AuthenticationError, match="not configured"):
        IdentityVerifier().verify("a.b.c")

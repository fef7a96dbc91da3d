import jwt
import pytest
from iot_hub.core.auth import Identity, TokenAuthenticator
from iot_hub.utils.exceptions import AuthenticationError


@pytest.fixture
def authenticator():
    return TokenAuthenticator({"secret": "test-secret", "expires_in": 60})


def test_issue_and_verify(authenticator):
    token = authenticator.issue_token(Identity(user_id="42", username="operator", role="admin"))

    identity = authenticator.verify(token)

    assert identity.user_id == "42"
    assert identity.username == "operator"
    assert identity.role == "admin"


@pytest.mark.parametrize("token", [None, ""])
def test_missing_token(authenticator, token):
    with pytest.raises(AuthenticationError) as exc_info:
        authenticator.verify(token)
    assert exc_info.value.reason == "missing"


def test_wrong_secret(authenticator):
    token = TokenAuthenticator({"secret": "other-secret"}).issue_token(Identity(username="operator"))

    with pytest.raises(AuthenticationError) as exc_info:
        authenticator.verify(token)
    assert exc_info.value.reason == "invalid"


def test_expired_token(authenticator):
    token = authenticator.issue_token(Identity(username="operator"), expires_in=-1)

    with pytest.raises(AuthenticationError) as exc_info:
        authenticator.verify(token)
    assert exc_info.value.reason == "invalid"


def test_token_without_username(authenticator):
    token = jwt.encode({"id": 1}, "test-secret", algorithm="HS256")

    with pytest.raises(AuthenticationError):
        authenticator.verify(token)

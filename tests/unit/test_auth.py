"""
Unit tests for authentication.
"""

from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from jobqueue.api.auth import (
    AuthenticatedCaller,
    create_access_token,
    decode_token,
    get_current_caller,
    validate_api_key,
)
from jobqueue.config import get_settings


class TestAuth:
    """Tests for authentication utilities."""

    def test_create_access_token(self):
        """Test JWT token creation."""
        token = create_access_token(caller_id="test-caller")

        assert token is not None
        assert isinstance(token, str)
        assert len(token) > 0

    def test_decode_valid_token(self):
        """Test decoding a valid token."""
        token = create_access_token(caller_id="test-caller")

        token_data = decode_token(token)

        assert token_data.caller_id == "test-caller"
        assert token_data.exp.tzinfo is not None

    def test_decode_expired_token(self):
        """Test decoding an expired token raises error."""
        # Create token that expired 1 hour ago
        token = create_access_token(
            caller_id="test-caller",
            expires_delta=timedelta(hours=-1),
        )

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)

        assert exc_info.value.status_code == 401

    def test_decode_invalid_token(self):
        """Test decoding an invalid token raises error."""
        with pytest.raises(HTTPException) as exc_info:
            decode_token("invalid-token")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_credentials_are_anonymous(self):
        """Test a request without a bearer token resolves to an anonymous caller."""
        caller = await get_current_caller(None)

        assert caller.caller_id is None

    @pytest.mark.asyncio
    async def test_bearer_credentials_identify_caller(self):
        """Test a bearer token resolves to the caller it was issued for."""
        credentials = HTTPAuthorizationCredentials(
            scheme="Bearer",
            credentials=create_access_token(caller_id="worker-7"),
        )

        caller = await get_current_caller(credentials)

        assert caller == AuthenticatedCaller(caller_id="worker-7")

    def test_decode_token_without_caller(self):
        """Test a signed token lacking the caller claim is rejected."""
        settings = get_settings()
        token = jwt.encode({"sub": "someone"}, settings.api_secret_key, algorithm=settings.api_algorithm)

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)

        assert exc_info.value.detail == "Invalid token: missing caller_id"

    def test_validate_api_key_valid(self):
        """Test API key validation with valid key."""
        assert validate_api_key("valid-key", "caller-123") is True

    def test_validate_api_key_empty(self):
        """Test API key validation with empty values."""
        assert validate_api_key("", "caller") is False
        assert validate_api_key("key", "") is False
        assert validate_api_key("", "") is False

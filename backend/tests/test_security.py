from datetime import timedelta

import pytest

from bulkdata.core.security import (
    InvalidTokenError,
    Scope,
    create_access_token,
    decode_access_token,
    get_bearer_token,
    get_granted_scopes,
    has_access_to_resource_type,
    parse_scopes,
)


@pytest.mark.parametrize(
    "scope, resource_type, expected",
    [
        ("system/*.read", "Patient", True),
        ("system/*.*", "Observation", True),
        ("system/Patient.read", "Patient", True),
        ("system/Patient.read", "Observation", False),
        ("system/Patient.write", "Patient", False),
        ("system/Patient.rs", "Patient", True),
        ("system/Patient.r", "Patient", False),
        ("system/*.cruds", "Encounter", True),
        ("patient/*.read", "Patient", False),
        ("*/Patient.read", "Patient", True),
    ],
)
def test_read_access(scope, resource_type, expected):
    assert has_access_to_resource_type(parse_scopes(scope), resource_type) is expected


def test_scope_versions_and_invalid_scopes():
    assert Scope.from_string("system/Patient.read").version == "1"
    assert Scope.from_string("system/Patient.rs?category=x").version == "2"

    with pytest.raises(ValueError):
        Scope.from_string("launch/patient")

    assert [s.resource for s in parse_scopes("openid system/Group.read fhirUser")] == ["Group"]


def test_write_and_letter_access():
    scope = Scope.from_string("system/Patient.cud")
    assert scope.has_access_to("Patient", "write")
    assert not scope.has_access_to("Patient", "read")
    assert scope.has_access_to("Patient", "cd")
    assert not scope.has_access_to("Patient", "bogus")


def test_token_round_trip():
    token = create_access_token(scope="system/Patient.rs", client_id="client-1")
    data = decode_access_token(f"Bearer {token}")

    assert data.client_id == "client-1"
    assert data.error is None
    assert [s.resource for s in data.scopes] == ["Patient"]


def test_token_error_claims():
    token = create_access_token(sim_error="Invalid scope")
    assert decode_access_token(f"Bearer {token}").error == "Invalid scope"


def test_invalid_tokens():
    with pytest.raises(InvalidTokenError):
        decode_access_token("Bearer not-a-jwt")

    expired = create_access_token(expires_delta=timedelta(minutes=-1))
    with pytest.raises(InvalidTokenError):
        decode_access_token(f"Bearer {expired}")

    assert get_granted_scopes("Bearer not-a-jwt") == []
    assert get_granted_scopes(None) == []


def test_get_bearer_token():
    assert get_bearer_token("Bearer abc") == "abc"
    assert get_bearer_token("bearer   abc ") == "abc"

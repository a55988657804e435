from datetime import datetime, timezone

import pytest

from controller.models import (
    AcceptableUsePolicy, RoleRequest, format_time, parse_time, split_key,
)


def test_time_round_trips_at_second_precision():
    t = datetime(2026, 10, 1, 12, 30, 15, 999, tzinfo=timezone.utc)
    assert format_time(t) == "2026-10-01T12:30:15Z"
    assert parse_time("2026-10-01T12:30:15Z") == t.replace(microsecond=0)


@pytest.mark.parametrize("value", [None, "", "not a time"])
def test_unparseable_time_is_none(value):
    assert parse_time(value) is None


def test_naive_datetime_is_taken_as_utc():
    assert parse_time(datetime(2026, 1, 1)).tzinfo == timezone.utc


@pytest.mark.parametrize("key,expected", [
    ("team-a/alice", ("team-a", "alice")),
    ("alice", ("", "alice")),
])
def test_split_key(key, expected):
    assert split_key(key) == expected


@pytest.mark.parametrize("key", ["", "a/b/c", "team-a/"])
def test_split_key_rejects_malformed(key):
    with pytest.raises(ValueError):
        split_key(key)


def test_role_request_from_api_body():
    request = RoleRequest.from_dict({
        "metadata": {"name": "alice-edit", "namespace": "team-a", "resourceVersion": "7"},
        "spec": {
            "firstName": "Alice", "lastName": "Liddell", "email": "alice@example.org",
            "roleRef": {"kind": "ClusterRole", "name": "edit"},
        },
        "status": {"state": "Pending", "message": "awaiting role approval", "expiry": "2026-10-04T12:00:00Z"},
    })
    assert request.key == "team-a/alice-edit"
    assert request.full_name == "Alice Liddell"
    assert request.spec.approved is False
    assert request.spec.authentication == []
    assert request.status.expiry == datetime(2026, 10, 4, 12, tzinfo=timezone.utc)
    assert request.to_dict()["status"]["expiry"] == "2026-10-04T12:00:00Z"


def test_set_label_does_not_alias_previous_labels():
    request = RoleRequest.from_dict({"metadata": {"name": "a", "namespace": "ns", "labels": {"x": "1"}}})
    before = request.labels
    request.set_label("y", "2")
    assert before == {"x": "1"}
    assert request.labels == {"x": "1", "y": "2"}


def test_spec_equality_ignores_status():
    body = {"metadata": {"name": "a", "namespace": "ns"}, "spec": {"email": "a@example.org"}}
    a = RoleRequest.from_dict(body)
    b = RoleRequest.from_dict({**body, "status": {"state": "Failure"}})
    assert a.spec == b.spec
    assert a.status != b.status


def test_policy_from_body():
    policy = AcceptableUsePolicy.from_dict({
        "metadata": {"name": "alice-1", "labels": {"tenancy.opsmode.io/generated": "true"}},
        "spec": {"email": "alice@example.org", "accepted": True},
    })
    assert policy.accepted is True
    assert policy.to_dict()["spec"] == {"email": "alice@example.org", "accepted": True}

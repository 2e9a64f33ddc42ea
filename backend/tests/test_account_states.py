"""Tests for storage-account status rules."""
import pytest

from portal_uploads.services.provisioning import account_states
from portal_uploads.services.provisioning.account_states import is_transition_allowed


@pytest.mark.parametrize("current,target,allowed", [
    ("ACTIVE", "DISCONNECTED", True),
    ("ACTIVE", "ERROR", True),
    ("DISCONNECTED", "ACTIVE", True),
    ("DISCONNECTED", "ERROR", False),
    ("ERROR", "ACTIVE", True),
    ("ERROR", "DISCONNECTED", True),
    ("ACTIVE", "ACTIVE", False),
])
def test_transitions(current, target, allowed):
    assert is_transition_allowed(current, target) is allowed


def test_capabilities():
    assert account_states.can_create_uploads("ACTIVE")
    assert not account_states.can_create_uploads("ERROR")
    assert account_states.requires_reauth("DISCONNECTED")
    assert not account_states.show_in_ui("DISCONNECTED")
    assert account_states.show_in_ui("ERROR")
    assert not account_states.can_access_files("disconnected")


def test_unknown_status():
    with pytest.raises(ValueError):
        account_states.parse_status("DELETED")

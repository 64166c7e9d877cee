"""Tests for contract terms parsing."""

from datetime import date

import pytest

from connekt_fulfillment.core.terms import (
    ProjectRoleTerms,
    ProposalTerms,
    TaskAdminTerms,
    TaskAssignmentTerms,
    parse_terms,
)
from connekt_fulfillment.errors import InvalidTerms


class TestParseTerms:
    def test_task_assignment(self):
        terms = parse_terms({
            "type": "task_assignment",
            "taskId": "landing-page",
            "budget": 150,
            "currency": "gmd",
            "deadline": "2026-12-01",
            "expiresInDays": 3,
        })
        assert isinstance(terms, TaskAssignmentTerms)
        assert terms.task_id == "landing-page"
        assert terms.amount == 15000
        assert terms.currency == "GMD"
        assert terms.deadline == date(2026, 12, 1)
        assert terms.expires_in_days == 3

    def test_default_expiry(self):
        terms = parse_terms({"type": "task_admin", "taskId": "t", "currency": "GMD"}, default_expiry_days=10)
        assert isinstance(terms, TaskAdminTerms)
        assert terms.expires_in_days == 10
        assert terms.amount == 0

    def test_project_role(self):
        terms = parse_terms({"type": "project_role", "projectId": "site", "role": "supervisor", "currency": "GMD"})
        assert isinstance(terms, ProjectRoleTerms)
        assert terms.project_id == "site"
        assert terms.task_id is None
        assert terms.role == "supervisor"

    def test_budget_string_is_exact(self):
        terms = parse_terms({"type": "task_assignment", "taskId": "t", "budget": "0.29", "currency": "GMD"})
        assert terms.amount == 29

    def test_wire_format_parses_back_to_the_same_terms(self):
        terms = parse_terms({"type": "proposal", "taskId": "t", "budget": 99.5, "currency": "GMD"})
        assert parse_terms(terms.to_wire()) == terms


class TestParties:
    def test_task_assignment_recipient_works(self):
        terms = parse_terms({"type": "task_assignment", "taskId": "t", "budget": 1, "currency": "GMD"})
        assert terms.worker("olivia", "wendy") == "wendy"
        assert terms.payer("olivia", "wendy") == "olivia"

    def test_proposal_sender_works(self):
        terms = parse_terms({"type": "proposal", "taskId": "t", "budget": 1, "currency": "GMD"})
        assert isinstance(terms, ProposalTerms)
        assert terms.worker("wendy", "olivia") == "wendy"
        assert terms.payer("wendy", "olivia") == "olivia"


class TestInvalidTerms:
    def test_unknown_type(self):
        with pytest.raises(InvalidTerms) as exc:
            parse_terms({"type": "lease", "currency": "GMD"})
        assert "task_assignment" in exc.value.allowed

    def test_not_an_object(self):
        with pytest.raises(InvalidTerms):
            parse_terms(["task_assignment"])

    def test_fields_of_another_variant(self):
        with pytest.raises(InvalidTerms, match="projectId"):
            parse_terms({"type": "task_assignment", "taskId": "t", "projectId": "site", "budget": 1, "currency": "GMD"})

    def test_missing_required_field(self):
        with pytest.raises(InvalidTerms, match="budget"):
            parse_terms({"type": "task_assignment", "taskId": "t", "currency": "GMD"})

    @pytest.mark.parametrize("budget", [0, -10, "abc", True, [5]])
    def test_bad_budget(self, budget):
        with pytest.raises(InvalidTerms):
            parse_terms({"type": "task_assignment", "taskId": "t", "budget": budget, "currency": "GMD"})

    @pytest.mark.parametrize("currency", [None, "", "GM", "DALASI", 12])
    def test_bad_currency(self, currency):
        with pytest.raises(InvalidTerms):
            parse_terms({"type": "task_assignment", "taskId": "t", "budget": 1, "currency": currency})

    @pytest.mark.parametrize("days", [0, 366, 2.5, "7", False])
    def test_bad_expiry(self, days):
        with pytest.raises(InvalidTerms):
            parse_terms({"type": "task_assignment", "taskId": "t", "budget": 1, "currency": "GMD", "expiresInDays": days})

    def test_bad_deadline(self):
        with pytest.raises(InvalidTerms):
            parse_terms({"type": "task_assignment", "taskId": "t", "budget": 1, "currency": "GMD", "deadline": "soon"})

    def test_unknown_role(self):
        with pytest.raises(InvalidTerms):
            parse_terms({"type": "project_role", "projectId": "site", "role": "owner", "currency": "GMD"})

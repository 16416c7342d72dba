import unittest

import pytest

from docguard.errors import TenantIsolationViolation
from docguard.tenant_context import (
    Scope,
    assert_within_scope,
    resolve_persona_id,
    resolve_scope,
    resolve_tenant_id,
    sanitize_identifier,
)


class TestSanitizeIdentifier(unittest.TestCase):
    def test_lowercases_and_collapses_invalid_runs(self):
        self.assertEqual(sanitize_identifier("  Acme Corp!! "), "acme-corp")
        self.assertEqual(sanitize_identifier("Sales__Team--EU"), "sales__team-eu")

    def test_truncates_to_forty_characters(self):
        self.assertEqual(len(sanitize_identifier("a" * 60)), 40)

    def test_fully_invalid_identifier_becomes_empty(self):
        self.assertEqual(sanitize_identifier("!!!"), "")
        self.assertEqual(sanitize_identifier(None), "")


class TestScopeResolution(unittest.TestCase):
    def test_missing_identifiers_resolve_to_default_scope(self):
        scope = resolve_scope({}, {})

        self.assertEqual(scope, Scope("default", "default"))

    def test_header_wins_over_query(self):
        tenant = resolve_tenant_id({"x-tenant-id": "Acme"}, {"tenant": "other"})

        self.assertEqual(tenant, "acme")

    def test_query_used_when_headers_absent(self):
        self.assertEqual(resolve_tenant_id({}, {"tenantId": "Beta"}), "beta")
        self.assertEqual(resolve_persona_id({}, {"personaId": "Support"}), "support")

    def test_body_persona_is_last_fallback(self):
        self.assertEqual(resolve_persona_id({}, {}, body_persona="Sales"), "sales")
        self.assertEqual(resolve_persona_id({"x-persona": "interview"}, {}, body_persona="sales"), "interview")

    def test_invalid_tenant_falls_back_to_default(self):
        self.assertEqual(resolve_tenant_id({"x-tenant": "***"}), "default")


def test_scope_prefix_and_ownership():
    scope = Scope("acme", "sales")

    assert scope.prefix == "acme/sales"
    assert scope.owns("acme/sales/orders.csv")
    assert not scope.owns("acme/sales-eu/orders.csv")
    assert not scope.owns("other/sales/orders.csv")


def test_assert_within_scope_raises_for_foreign_reference():
    scope = Scope("acme", "sales")

    assert_within_scope(scope, "acme/sales/orders.csv")
    with pytest.raises(TenantIsolationViolation):
        assert_within_scope(scope, "beta/sales/orders.csv")

"""Tests for service_categories.py."""

import pytest

from service_categories import (
    BASE_INFUSION,
    CATEGORIES,
    CONSULTATION,
    INFUSION_ADDON,
    MEMBERSHIP,
    OTHER,
    REVENUE_TAXONOMY,
    STANDALONE_INJECTION,
    WEIGHT_MANAGEMENT,
    WEIGHT_MANAGEMENT_TAXONOMY,
    categorize,
    is_ambiguous,
    is_base_infusion,
    is_membership,
    is_standalone_injection,
    is_weight_program,
    matching_categories,
    membership_type,
    new_signup_type,
)


class TestRevenueTaxonomy:
    """Standard precedence, one rule at a time."""

    @pytest.mark.parametrize("desc, expected", [
        ("Saline 1L (Member)", BASE_INFUSION),
        ("Hydration (Non-Member)", BASE_INFUSION),
        ("Performance & Recovery", BASE_INFUSION),
        ("NAD+ 500mg", BASE_INFUSION),
        ("Methylene Blue Infusion", BASE_INFUSION),
        ("Toradol", INFUSION_ADDON),
        ("NAD+ 100mg add-on", INFUSION_ADDON),
        ("Vitamin B12", INFUSION_ADDON),
        ("Semaglutide 2.5mg", STANDALONE_INJECTION),
        ("Tirzepatide Weekly", STANDALONE_INJECTION),
        ("B12 Injection", STANDALONE_INJECTION),
        ("Metabolism Boost Injection", STANDALONE_INJECTION),
        ("Membership - Family (NEW)", MEMBERSHIP),
        ("Concierge Monthly", MEMBERSHIP),
        ("Hormone Follow-Up Female", CONSULTATION),
        ("Weight Loss Consultation", CONSULTATION),
        ("Member Consultation", CONSULTATION),
        ("Lab Draw Fee", OTHER),
        ("Gift Card", OTHER),
        ("", OTHER),
    ])
    def test_categorize(self, desc, expected):
        assert categorize(desc) == expected

    def test_case_and_spacing_insensitive(self):
        assert categorize("  SALINE   1L  ") == BASE_INFUSION

    def test_price_tier_marker_is_not_membership(self):
        assert not is_membership("energy (member)")
        assert not is_membership("immunity (non-member)")
        assert is_membership("drip iv membership")

    def test_lab_excluded_from_membership_and_infusion(self):
        assert not is_membership("member lab panel")
        assert not is_base_infusion("cbc hydration panel")

    def test_vitamin_b12_injection_is_not_standalone(self):
        assert not is_standalone_injection("vitamin b12 injection")
        assert categorize("Vitamin B12 Injection") == INFUSION_ADDON


class TestWeightManagementTaxonomy:
    """The variant inserts a weight_management rule after consultation."""

    @pytest.mark.parametrize("desc", [
        "Semaglutide Monthly Program",
        "Tirzepatide 4 Week Package",
        "Contrave",
        "GLP-1 Starter",
        "Weight Loss Plan",
    ])
    def test_weight_management(self, desc):
        assert categorize(desc, WEIGHT_MANAGEMENT_TAXONOMY) == WEIGHT_MANAGEMENT

    def test_plain_dose_stays_injection(self):
        assert categorize("Semaglutide 2.5mg", WEIGHT_MANAGEMENT_TAXONOMY) == STANDALONE_INJECTION

    def test_consultation_still_wins(self):
        assert categorize("Semaglutide Consultation", WEIGHT_MANAGEMENT_TAXONOMY) == CONSULTATION

    def test_program_rule(self):
        assert is_weight_program("semaglutide bundle")
        assert not is_weight_program("semaglutide 2.5mg")

    def test_standard_taxonomy_never_emits_weight_management(self):
        assert categorize("Semaglutide Monthly Program") == STANDALONE_INJECTION


class TestTotality:
    """Every description gets exactly one known category under both taxonomies."""

    @pytest.mark.parametrize("taxonomy", [REVENUE_TAXONOMY, WEIGHT_MANAGEMENT_TAXONOMY])
    @pytest.mark.parametrize("desc", [
        "Saline 1L", "Zinc", "Semaglutide", "Membership", "Consult",
        "Contrave", "Random Retail Item", "   ", None,
    ])
    def test_single_known_category(self, taxonomy, desc):
        assert categorize(desc, taxonomy) in CATEGORIES

    def test_first_match_is_categorize(self):
        for desc in ("NAD+ 500mg", "Energy + Glutathione", "Hormone Membership"):
            matches = matching_categories(desc)
            assert categorize(desc) == (matches[0] if matches else OTHER)


class TestAmbiguity:
    """Cross-family matches are flagged; same-family overlap is not."""

    def test_infusion_with_injection(self):
        assert is_ambiguous("Energy Drip + Semaglutide")
        assert matching_categories("Energy Drip + Semaglutide") == [STANDALONE_INJECTION, BASE_INFUSION]

    def test_full_dose_nad_not_flagged(self):
        assert matching_categories("NAD+ 500mg") == [BASE_INFUSION, INFUSION_ADDON]
        assert not is_ambiguous("NAD+ 500mg")

    def test_single_rule(self):
        assert not is_ambiguous("Saline 1L")
        assert not is_ambiguous("Gift Card")


class TestMembershipPlans:
    """Plan type and NEW-signup detection on membership titles."""

    @pytest.mark.parametrize("title, expected", [
        ("Membership - Family (NEW)", "family"),
        ("Family Concierge", "family"),
        ("Drip Concierge", "concierge"),
        ("CORPORATE wellness", "corporate"),
        ("Gift Card", None),
    ])
    def test_membership_type(self, title, expected):
        assert membership_type(title) == expected

    def test_new_signup_type(self):
        assert new_signup_type("Membership - Individual (NEW)") == "individual"
        assert new_signup_type("new corporate membership") == "corporate"
        assert new_signup_type("Membership - Family Renewal") is None
        assert new_signup_type("Membership - Family") is None
        assert new_signup_type("NEW Membership") is None

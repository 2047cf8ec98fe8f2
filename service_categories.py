"""
service_categories.py - Deterministic categorization of billing charge descriptions.

A taxonomy is an ordered tuple of (predicate, category) rules. The first rule
whose predicate matches wins, so the order below is the precedence.
"""

import re

BASE_INFUSION = "base_infusion"
INFUSION_ADDON = "infusion_addon"
STANDALONE_INJECTION = "standalone_injection"
MEMBERSHIP = "membership"
CONSULTATION = "consultation"
WEIGHT_MANAGEMENT = "weight_management"
OTHER = "other"

CATEGORIES = (
    BASE_INFUSION, INFUSION_ADDON, STANDALONE_INJECTION, MEMBERSHIP,
    CONSULTATION, WEIGHT_MANAGEMENT, OTHER,
)

FAMILIES = {
    BASE_INFUSION: "infusion",
    INFUSION_ADDON: "infusion",
    STANDALONE_INJECTION: "injection",
    WEIGHT_MANAGEMENT: "injection",
    MEMBERSHIP: "membership",
    CONSULTATION: "consultation",
}

# Price-tier suffixes, not membership fees
PRICE_TIER_MARKERS = ("(non-member)", "non-member", "non member", "(member)")

CONSULT_KEYWORDS = ("consultation", "consult", "follow-up", "follow up", "hormone", "initial visit")
LAB_KEYWORDS = ("lab", "cbc", "cmp", "draw fee", "blood work", "panel")
MEMBERSHIP_KEYWORDS = ("membership", "concierge", "member")

GLP1_DRUGS = ("semaglutide", "tirzepatide")
NAMED_INJECTIONS = (
    "metabolism boost injection", "vitamin d injection",
    "glutathione injection", "biotin injection",
)

ADMIN_EXCLUSIONS = ("lab", "cbc", "cmp", "draw fee", "office visit")
BASE_INFUSIONS = (
    "saline 1l", "hydration", "performance & recovery", "energy", "immunity",
    "alleviate", "all inclusive", "lux beauty", "methylene blue infusion",
)
FULL_DOSE_NAD = ("250mg", "500mg")

INFUSION_ADDONS = (
    "vitamin d3", "glutathione", "nad", "toradol", "magnesium", "vitamin b12",
    "zofran", "biotin", "vitamin c", "zinc", "mineral blend", "vita-complex", "taurine",
)

WEIGHT_PROGRAM_KEYWORDS = ("contrave", "weight loss", "glp-1", "glp1")
PROGRAM_WORDS = ("program", "monthly", "weekly", "bundle", "package", "plan")

_SPACES = re.compile(r"\s+")


def _clean(desc):
    return _SPACES.sub(" ", (desc or "").strip().lower())


def _has_any(text, words):
    return any(w in text for w in words)


def strip_price_tier(text):
    for marker in PRICE_TIER_MARKERS:
        text = text.replace(marker, " ")
    return text


# ──────────────────────────────────────────────────────────────────────────────
# Rule predicates (take an already-lowercased description)
# ──────────────────────────────────────────────────────────────────────────────

def is_membership(text):
    core = strip_price_tier(text)
    if not _has_any(core, MEMBERSHIP_KEYWORDS):
        return False
    return not (_has_any(core, CONSULT_KEYWORDS) or _has_any(core, LAB_KEYWORDS))


def is_consultation(text):
    return _has_any(text, CONSULT_KEYWORDS)


def is_standalone_injection(text):
    if _has_any(text, GLP1_DRUGS) or _has_any(text, NAMED_INJECTIONS):
        return True
    # B12 is also an infusion additive ("Vitamin B12" add-on)
    return "b12" in text and "injection" in text and "vitamin" not in text


def is_base_infusion(text):
    if _has_any(text, ADMIN_EXCLUSIONS):
        return False
    if _has_any(text, BASE_INFUSIONS):
        return True
    return "nad" in text and _has_any(text, FULL_DOSE_NAD)


def is_infusion_addon(text):
    return _has_any(text, INFUSION_ADDONS)


def is_weight_program(text):
    if _has_any(text, WEIGHT_PROGRAM_KEYWORDS):
        return True
    return _has_any(text, GLP1_DRUGS) and _has_any(text, PROGRAM_WORDS)


def is_glp1(text):
    return _has_any(text, GLP1_DRUGS)


REVENUE_TAXONOMY = (
    (is_membership, MEMBERSHIP),
    (is_consultation, CONSULTATION),
    (is_standalone_injection, STANDALONE_INJECTION),
    (is_base_infusion, BASE_INFUSION),
    (is_infusion_addon, INFUSION_ADDON),
)

WEIGHT_MANAGEMENT_TAXONOMY = (
    (is_membership, MEMBERSHIP),
    (is_consultation, CONSULTATION),
    (is_weight_program, WEIGHT_MANAGEMENT),
    (is_standalone_injection, STANDALONE_INJECTION),
    (is_base_infusion, BASE_INFUSION),
    (is_infusion_addon, INFUSION_ADDON),
)

def categorize(description, taxonomy=REVENUE_TAXONOMY):
    text = _clean(description)
    for predicate, category in taxonomy:
        if predicate(text):
            return category
    return OTHER


def matching_categories(description, taxonomy=REVENUE_TAXONOMY):
    """Every category whose rule matches, in precedence order."""
    text = _clean(description)
    found = []
    for predicate, category in taxonomy:
        if category not in found and predicate(text):
            found.append(category)
    return found


def is_ambiguous(description, taxonomy=REVENUE_TAXONOMY):
    """True when rules from more than one category family match.

    Overlap inside a family (a full-dose NAD drip is both a base infusion and
    an add-on) is expected and not flagged.
    """
    families = {FAMILIES[c] for c in matching_categories(description, taxonomy)}
    return len(families) > 1


def is_weight_loss(description):
    text = _clean(description)
    return is_glp1(text) or "contrave" in text


def mentions_weight_loss(description):
    text = _clean(description)
    return is_weight_loss(text) or "weight loss" in text


# ── Membership plans ─────────────────────────────────────────────────────────

MEMBERSHIP_TYPES = ("individual", "family", "concierge", "corporate")

_NEW_SIGNUP = re.compile(r"\bnew\b")


def membership_type(title):
    """Plan type named in a membership title, checked in MEMBERSHIP_TYPES order."""
    text = _clean(title)
    for kind in MEMBERSHIP_TYPES:
        if kind in text:
            return kind
    return None


def new_signup_type(description):
    """Plan type of a billed membership marked as a new signup ("(NEW)"), else None."""
    text = _clean(description)
    if not _NEW_SIGNUP.search(text):
        return None
    return membership_type(text)

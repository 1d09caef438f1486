"""Tests for operating-statement line-item classification."""
from services.taxonomy import DEFAULT_TAXONOMY, TaxonomyMatcher, clean_label


# ---- clean_label ----

def test_clean_label_strips_gl_code_and_whitespace():
    assert clean_label("50100 - Payroll") == "payroll"
    assert clean_label("  Repairs   &  Maintenance ") == "repairs & maintenance"
    assert clean_label(None) == ""


# ---- TaxonomyMatcher.match ----

def test_total_operating_expenses_is_total_opex():
    m = TaxonomyMatcher()
    assert m.match("Total Operating Expenses") == "total_opex"


def test_common_labels():
    m = TaxonomyMatcher()
    assert m.match("Gross Potential Rent") == "gsr"
    assert m.match("Vacancy Loss") == "vacancy"
    assert m.match("Total Revenue") == "egi"
    assert m.match("Property Taxes") == "taxes"
    assert m.match("Net Operating Income") == "noi"
    assert m.match("Repairs & Maintenance") == "repairs_maintenance"


def test_abbreviations_match_exactly():
    m = TaxonomyMatcher()
    assert m.match("R&M") == "repairs_maintenance"
    assert m.match("GPR") == "gsr"
    assert m.match("NOI:") == "noi"


def test_gl_coded_label():
    assert TaxonomyMatcher().match("50100 - Payroll") == "payroll"


def test_exclusion_phrase_is_not_gross_rent():
    """A net-of-concessions rent line must not be read as gross scheduled rent."""
    m = TaxonomyMatcher()
    assert m.match("Net Potential Rent (excl. concessions)") is None
    assert m.match("Rent excluding concessions") is None


def test_non_data_rows():
    m = TaxonomyMatcher()
    assert m.match("") is None
    assert m.match("-----") is None
    assert m.match("Total") is None
    assert m.match("Page 2 of 5") is None
    assert m.match("1,234.56") is None


def test_non_controllable_is_not_controllable():
    m = TaxonomyMatcher()
    assert m.match("Non-Controllable Expenses") == "non_controllable_expenses"
    assert m.match("Total Controllable") == "controllable_expenses"


def test_fuzzy_match_for_misspelling():
    assert TaxonomyMatcher().match("Payrol") == "payroll"


def test_unclassified_label_returns_none():
    assert TaxonomyMatcher().match("Zqxj Wvk") is None


def test_threshold_is_configurable():
    strict = TaxonomyMatcher(DEFAULT_TAXONOMY.with_threshold(99.0))
    assert strict.match("Payrol") is None


def test_summary_field_and_canonical_name():
    m = TaxonomyMatcher()
    assert m.summary_field("egi") == "total_revenue"
    assert m.canonical_name("gsr") == "gross_scheduled_rent"
    assert m.summary_field("nope") is None

"""
Line-item taxonomy for operating statements (T-12s, OM financial tables).

`LineItemTaxonomy` is an immutable registry mapping canonical keys ("gsr", "noi",
...) to abbreviations, substring keywords and regex patterns. `TaxonomyMatcher`
classifies free-text row labels against it:

1. strip GL codes / collapse whitespace / lowercase
2. reject non-data rows and labels carrying an exclusion phrase
3. exact abbreviation match
4. regex pattern match
5. fuzzy token-sort-ratio match over all keywords (threshold, default 70)

No hit returns None: the caller treats the line as unclassified, not as zero.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from rapidfuzz import fuzz, process

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaxonomyEntry:
    canonical: str
    keywords: tuple[str, ...] = ()
    abbreviations: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()


@dataclass(frozen=True)
class LineItemTaxonomy:
    entries: Mapping[str, TaxonomyEntry]
    summary_fields: Mapping[str, str] = field(default_factory=dict)
    exclusion_phrases: tuple[str, ...] = ("excl.", "excl ", "excluding", "net potential", "after ")
    non_data_patterns: tuple[str, ...] = (
        r"^[\s\-=_*.#]*$",
        r"^(grand\s+)?totals?:?$",
        r"^page\s+\d+(\s+of\s+\d+)?$",
        r"^[\d\s.,$%()\-]+$",
    )
    fuzzy_threshold: float = 70.0

    def keys(self) -> list[str]:
        return list(self.entries.keys())

    def with_threshold(self, threshold: float) -> "LineItemTaxonomy":
        return LineItemTaxonomy(
            entries=self.entries,
            summary_fields=self.summary_fields,
            exclusion_phrases=self.exclusion_phrases,
            non_data_patterns=self.non_data_patterns,
            fuzzy_threshold=threshold,
        )


def _entry(canonical: str, keywords: list[str], abbreviations: list[str], patterns: list[str]) -> TaxonomyEntry:
    return TaxonomyEntry(
        canonical=canonical,
        keywords=tuple(keywords),
        abbreviations=tuple(abbreviations),
        patterns=tuple(patterns),
    )


# Declaration order matters: regex patterns are tried key by key in this order.
_DEFAULT_ENTRIES: dict[str, TaxonomyEntry] = {
    "gsr": _entry(
        "gross_scheduled_rent",
        [
            "gross potential rent", "gross scheduled rent", "potential rental income",
            "scheduled rent revenue", "gross rent potential", "rental revenue",
            "apt rent revenue", "residential rent", "gross rent", "total rent revenue",
            "rent revenue", "gross potential revenue", "gross rental income",
            "residential income", "apartment income", "rental income",
            "gross potential", "gross scheduled",
        ],
        ["gpr", "gsr", "gpi"],
        [r"gross\s+\w*\s*rent", r"potential\s+\w*\s*rent", r"scheduled\s+\w*\s*rent"],
    ),
    "loss_to_lease": _entry(
        "loss_to_lease",
        ["loss to lease", "gain loss to lease", "gain/loss to lease", "gain / loss to lease", "gain(loss) to lease"],
        ["ltl"],
        [r"loss\s+to\s+lease", r"gain.*loss.*lease"],
    ),
    "vacancy": _entry(
        "vacancy_loss",
        [
            "vacancy loss", "vacancy & credit loss", "vacancy and credit loss", "economic vacancy",
            "physical vacancy", "vacancy/credit loss", "vacancy allowance", "vacancy factor",
            "less: vacancy", "less vacancy",
        ],
        ["vac", "vcl"],
        [r"vacanc\w+", r"less[\s:]*vacanc"],
    ),
    "concessions": _entry(
        "concessions",
        [
            "concessions", "rent concessions", "leasing concessions", "lease concessions",
            "rental concessions", "move-in concessions", "specials", "rent free",
        ],
        [],
        [r"concess\w+"],
    ),
    "bad_debt": _entry(
        "bad_debt",
        ["bad debt", "bad debt expense", "credit loss", "uncollectible", "write-offs", "write offs", "collection loss", "delinquency"],
        [],
        [r"bad\s+debt", r"credit\s+loss", r"write[\s-]*off"],
    ),
    "non_revenue_units": _entry(
        "non_revenue_units",
        ["non revenue units", "non-revenue units", "non revenue", "non-rev units", "model/employee"],
        [],
        [r"non[\s-]*rev\w*\s*unit"],
    ),
    "net_rental_income": _entry(
        "net_rental_income",
        ["net rental income", "net rent income"],
        ["nri"],
        [r"net\s+rent\w*\s+income"],
    ),
    "other_income": _entry(
        "other_income",
        [
            "other income", "other revenue", "ancillary income", "misc income", "miscellaneous income",
            "non-rental income", "utility reimbursement", "utility income", "laundry income",
            "parking income", "pet income", "application fee income", "late fee income", "fee income",
            "rubs", "ratio utility billing",
        ],
        [],
        [r"other\s+\w*\s*income", r"other\s+\w*\s*revenue"],
    ),
    "egi": _entry(
        "effective_gross_income",
        [
            "effective gross income", "total income", "total revenue", "gross operating income",
            "total operating revenue", "total collected revenue", "effective gross revenue", "gross revenue",
        ],
        ["egi", "goi"],
        [r"effective\s+gross", r"total\s+\w*\s*income", r"total\s+\w*\s*revenue"],
    ),
    "payroll": _entry(
        "payroll",
        [
            "payroll", "salaries", "wages", "payroll expense", "salary expense", "employee expense",
            "personnel", "on-site payroll", "total payroll", "salaries & wages",
        ],
        [],
        [r"payroll", r"salar\w+", r"wage"],
    ),
    "utilities": _entry(
        "utilities",
        ["utilities", "utility expense", "total utilities", "water/sewer", "electric", "gas", "trash removal", "utility"],
        ["util"],
        [r"utilit\w+"],
    ),
    "repairs_maintenance": _entry(
        "repairs_and_maintenance",
        [
            "repairs & maintenance", "repairs and maintenance", "maintenance", "repairs",
            "maintenance & repairs", "building maintenance", "general maintenance",
        ],
        ["r&m", "r and m"],
        [r"repair", r"maint\w+"],
    ),
    "turnover": _entry("turnover", ["turnover", "make ready", "turn cost"], [], [r"turnover", r"make\s+ready"]),
    "contract_services": _entry(
        "contract_services",
        ["contract services", "contracts", "contracted services"],
        [],
        [r"contract\w*\s+service"],
    ),
    "marketing": _entry("marketing", ["marketing", "advertising", "leasing cost"], [], [r"market\w+", r"advertis\w+"]),
    "administrative": _entry(
        "administrative",
        ["administrative", "general & administrative", "admin", "office expense"],
        ["g&a"],
        [r"admin\w+", r"g\s*&\s*a"],
    ),
    "management_fee": _entry(
        "management_fee",
        ["management fee", "management fees", "property management", "mgmt fee", "management expense"],
        ["mgmt"],
        [r"manag\w+\s*(fee|exp)", r"mgmt"],
    ),
    "controllable_expenses": _entry(
        "controllable_expenses",
        ["controllable expenses", "controllable", "total controllable"],
        [],
        [r"(?<!non )(?<!non-)\bcontrollable"],
    ),
    "taxes": _entry(
        "real_estate_taxes",
        [
            "real estate taxes", "property taxes", "re taxes", "tax expense", "ad valorem taxes",
            "real property tax", "real estate tax", "property tax", "taxes",
        ],
        ["ret"],
        [r"r\.?e\.?\s*tax", r"propert\w+\s+tax"],
    ),
    "insurance": _entry(
        "insurance",
        ["insurance", "property insurance", "hazard insurance", "liability insurance", "insurance expense"],
        ["ins"],
        [r"insur\w+"],
    ),
    "non_controllable_expenses": _entry(
        "non_controllable_expenses",
        ["non controllable expenses", "non-controllable expenses", "non controllable", "non-controllable"],
        [],
        [r"non[\s-]*controllable"],
    ),
    "total_opex": _entry(
        "total_operating_expenses",
        [
            "total operating expenses", "total expenses", "operating expenses", "total opex",
            "total operating exp", "controllable + non-controllable", "total property expenses", "total expense",
        ],
        ["opex"],
        [r"total\s+\w*\s*operat\w+\s*exp", r"total\s+exp"],
    ),
    "noi": _entry(
        "net_operating_income",
        [
            "net operating income", "net income before debt", "net cash flow from operations",
            "net income", "income before debt service", "cash flow before debt", "net operating profit",
        ],
        ["noi"],
        [r"net\s+operat\w+\s*income", r"\bnoi\b"],
    ),
}

_DEFAULT_SUMMARY_FIELDS: dict[str, str] = {
    "gsr": "gross_potential_rent",
    "loss_to_lease": "loss_to_lease",
    "vacancy": "vacancy_loss",
    "concessions": "concessions",
    "bad_debt": "bad_debt",
    "non_revenue_units": "non_revenue_units",
    "net_rental_income": "net_rental_income",
    "other_income": "other_income",
    "egi": "total_revenue",
    "payroll": "payroll",
    "utilities": "utilities",
    "repairs_maintenance": "repairs_maintenance",
    "turnover": "turnover",
    "contract_services": "contract_services",
    "marketing": "marketing",
    "administrative": "administrative",
    "management_fee": "management_fee",
    "controllable_expenses": "controllable_expenses",
    "taxes": "real_estate_taxes",
    "insurance": "insurance",
    "non_controllable_expenses": "non_controllable_expenses",
    "total_opex": "total_operating_expenses",
    "noi": "net_operating_income",
}

DEFAULT_TAXONOMY = LineItemTaxonomy(entries=_DEFAULT_ENTRIES, summary_fields=_DEFAULT_SUMMARY_FIELDS)

_GL_CODE_RE = re.compile(r"^\d{5,}[\s\-.:]*")


def clean_label(raw_label: object) -> str:
    """Strip leading GL account codes, collapse whitespace, lowercase."""
    text = str(raw_label or "").strip()
    text = _GL_CODE_RE.sub("", text)
    return re.sub(r"\s+", " ", text).strip().lower()


class TaxonomyMatcher:
    """Classify operating-statement row labels against a `LineItemTaxonomy`."""

    def __init__(self, taxonomy: LineItemTaxonomy = DEFAULT_TAXONOMY):
        self.taxonomy = taxonomy
        self._non_data = [re.compile(p, re.I) for p in taxonomy.non_data_patterns]
        self._abbreviations: dict[str, str] = {}
        for key, entry in taxonomy.entries.items():
            for abbr in entry.abbreviations:
                self._abbreviations.setdefault(abbr.lower(), key)
        self._patterns = [
            (key, re.compile(p, re.I)) for key, entry in taxonomy.entries.items() for p in entry.patterns
        ]
        # keyword -> key; first declaration wins on duplicates
        self._keywords: dict[str, str] = {}
        for key, entry in taxonomy.entries.items():
            for kw in entry.keywords:
                self._keywords.setdefault(kw.lower(), key)
        self._keyword_choices = list(self._keywords.keys())

    def is_non_data(self, label: str) -> bool:
        if not label:
            return True
        if any(p.search(label) for p in self._non_data):
            return True
        return any(phrase in label for phrase in self.taxonomy.exclusion_phrases)

    def match(self, raw_label: object) -> Optional[str]:
        label = clean_label(raw_label)
        if self.is_non_data(label):
            return None

        # Abbreviations short-circuit fuzzier matching ("R&M" must not drift to another category)
        stripped = label.rstrip(":").strip()
        if stripped in self._abbreviations:
            return self._abbreviations[stripped]

        for key, pattern in self._patterns:
            if pattern.search(label):
                return key

        if not self._keyword_choices:
            return None
        best = process.extractOne(
            label,
            self._keyword_choices,
            scorer=fuzz.token_sort_ratio,
            score_cutoff=self.taxonomy.fuzzy_threshold,
        )
        if best is None:
            return None
        keyword, score, _ = best
        logger.debug("[taxonomy] fuzzy label=%r keyword=%r score=%.1f", label, keyword, score)
        return self._keywords[keyword]

    def summary_field(self, key: str) -> Optional[str]:
        return self.taxonomy.summary_fields.get(key)

    def canonical_name(self, key: str) -> Optional[str]:
        entry = self.taxonomy.entries.get(key)
        return entry.canonical if entry else None

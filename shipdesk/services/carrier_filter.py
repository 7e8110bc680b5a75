"""
Carrier allow-list filtering and cheapest-rate selection.

Carrier names are compared as letters-only upper-case tokens, with the long
forms of the big carriers folded to their short names, and a rate matches
when either token contains the other ("FedEx" ~ "FEDERAL EXPRESS" ~ "Fed Ex").
"""
import re
from typing import Iterable, List, Optional, Sequence

from shipdesk.services.rate_normalizer import NormalizedRate

CARRIER_ALIASES = (
    ("FEDERALEXPRESS", "FEDEX"),
    ("UNITEDPARCELSERVICE", "UPS"),
    ("USPOSTALSERVICE", "USPS"),
)

_NON_LETTERS = re.compile(r"[^A-Z]")
_NON_SLUG = re.compile(r"[^a-z0-9]+")


def normalize_carrier_letters(value: str) -> str:
    return _NON_LETTERS.sub("", (value or "").upper())


def canonical_carrier_alias(normalized: str) -> Optional[str]:
    for long_form, short_form in CARRIER_ALIASES:
        if long_form in normalized:
            return short_form
    return None


def carrier_match_tokens(value: str) -> List[str]:
    normalized = normalize_carrier_letters(value)
    if not normalized:
        return []
    tokens = [normalized]
    alias = canonical_carrier_alias(normalized)
    if alias and alias not in tokens:
        tokens.append(alias)
    return tokens


def carrier_slug(value: str) -> str:
    """Lower-case dash slug used in cache signatures."""
    return _NON_SLUG.sub("-", (value or "").lower()).strip("-")


def filter_allowed_rates(
    rates: Iterable[NormalizedRate],
    allowed_carriers: Sequence[str],
) -> List[NormalizedRate]:
    """
    Keep rates whose carrier matches the allow-list, cheapest first.

    An empty allow-list (or one with no usable tokens) permits every carrier.
    The sort is stable, so equal prices keep the upstream response order.
    """
    rates = list(rates)
    allowed_tokens = [token for carrier in allowed_carriers for token in carrier_match_tokens(carrier)]
    if allowed_tokens:
        rates = [
            rate for rate in rates
            if any(
                carrier_token in allowed_token or allowed_token in carrier_token
                for carrier_token in carrier_match_tokens(rate.carrier)
                for allowed_token in allowed_tokens
            )
        ]
    return sorted(rates, key=lambda rate: rate.amount_cents)


def pick_cheapest_rate(rates: Sequence[NormalizedRate]) -> Optional[NormalizedRate]:
    """Lowest amount; the earliest entry wins a tie."""
    cheapest = None
    for rate in rates:
        if cheapest is None or rate.amount_cents < cheapest.amount_cents:
            cheapest = rate
    return cheapest


def find_rate(rates: Sequence[NormalizedRate], rate_id: Optional[str]) -> Optional[NormalizedRate]:
    if not rate_id:
        return None
    return next((rate for rate in rates if rate.id == rate_id), None)

"""
Cross-field validation and repair for normalized sales comps.

Upstream trackers mix up total price, price per unit and price per SF. Rather
than rejecting such rows, a small set of documented rules corrects them and
every correction or doubt is reported as a warning. Warnings never block.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from models import NormalizedComp


@dataclass(frozen=True)
class RepairConfig:
    default_unit_sf: float = 900.0
    # sale_price below this with more than `min_units` units is really $/SF
    price_per_sf_ceiling: float = 10_000.0
    min_units: int = 10
    # price_per_unit below this is treated as missing
    ppu_floor: float = 1_000.0
    # derive price_per_unit only from a plausible total price
    min_total_price: float = 100_000.0
    ppu_band: Tuple[float, float] = (20_000.0, 2_000_000.0)


DEFAULT_REPAIR_CONFIG = RepairConfig()


def validate_and_repair(
    comp: NormalizedComp,
    default_unit_sf: float | None = None,
    config: RepairConfig = DEFAULT_REPAIR_CONFIG,
) -> Tuple[NormalizedComp, List[str]]:
    """
    Return a repaired copy of `comp` and the warnings produced. The input is not modified.

    Rules, in order:
    1. sale_price < $10K with units > 10 -> the value was $/SF; keep it as
       price_per_sf and recompute sale_price = $/SF x effective unit SF x units.
    2. price_per_unit missing or below the floor -> sale_price / units.
    3. price_per_sf missing -> sale_price / (units x avg_unit_sf).
    4. price_per_unit outside the plausibility band -> warning only.
    """
    unit_sf_default = default_unit_sf if default_unit_sf is not None else config.default_unit_sf
    rec = comp.model_copy()
    warnings: List[str] = []
    name = rec.property_name or "unknown"
    units = rec.units
    sale_price = rec.sale_price

    if sale_price is not None and units is not None and units > config.min_units:
        if sale_price < config.price_per_sf_ceiling:
            warnings.append(f"{name}: sale_price={sale_price} looks like $/SF, correcting")
            if rec.price_per_sf is None:
                rec.price_per_sf = sale_price
            effective_sf = rec.avg_unit_sf if rec.avg_unit_sf and rec.avg_unit_sf > 0 else unit_sf_default
            rec.sale_price = round(sale_price * effective_sf * units, 2)
            sale_price = rec.sale_price

    if (
        (rec.price_per_unit is None or rec.price_per_unit < config.ppu_floor)
        and sale_price and units and units > 0
        and sale_price > config.min_total_price
    ):
        rec.price_per_unit = round(sale_price / units, 2)

    if rec.price_per_sf is None and sale_price and units and rec.avg_unit_sf:
        total_sf = units * rec.avg_unit_sf
        if total_sf > 0:
            rec.price_per_sf = round(sale_price / total_sf, 2)

    low, high = config.ppu_band
    if sale_price is not None and sale_price > 0 and units and units > config.min_units:
        ppu = rec.price_per_unit
        if ppu is not None and (ppu < low or ppu > high):
            warnings.append(
                f"{name}: derived price_per_unit={ppu} outside expected range ${low:,.0f} to ${high:,.0f}"
            )

    return rec, warnings


def validate_all(
    comps: Sequence[NormalizedComp],
    default_unit_sf: float | None = None,
    config: RepairConfig = DEFAULT_REPAIR_CONFIG,
) -> Tuple[List[NormalizedComp], List[str]]:
    out: List[NormalizedComp] = []
    warnings: List[str] = []
    for comp in comps:
        fixed, w = validate_and_repair(comp, default_unit_sf=default_unit_sf, config=config)
        out.append(fixed)
        warnings.extend(w)
    return out, warnings

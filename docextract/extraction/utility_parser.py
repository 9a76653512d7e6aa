"""Water/utility meter nameplate parser.

Works on flat recognition output from a meter photo. The steps run in a
fixed order and each one claims the lines it uses, so a line read as the
standard can never come back as the serial number:

1. standard (``ISO 4064``)
2. model specifications (Q3, Q3/Q1, PN, temperature, class, multipliers,
   orientation); each matching line becomes a spec anchor
3. manufacturer, the all-caps name closest to a spec anchor
4. serial number versus reading hint among long numbers
5. main reading, around the ``m³`` unit marker or by fallback priority
"""

import re
from dataclasses import dataclass, field
from typing import Any

from docextract.ocr.lines import (
    Claims,
    Line,
    distance,
    is_barcode,
    is_numerical,
    normalize_pages,
)
from docextract.utils.config import UtilityParserConfig
from docextract.utils.logger import get_logger

from .models import ModelSpecs, UtilityBill
from .rules import Rule, apply_rules
from .scoring import Anchor, CandidateScorer

logger = get_logger(__name__)

_ISO_RE = re.compile(r"ISO\s*(\d+)")
_Q3_LABEL_RE = re.compile(r"Q3[:\s]+(.*)", re.IGNORECASE)
_Q3_TAIL_RE = re.compile(r"\s+(?:PN|CLASS\b|Q3/Q1)", re.IGNORECASE)
_FLOW_RE = re.compile(
    r"\b(?:Q\s*n|Qn|On)[-:\s=]?(\d+[,.]?\d*)"
    r"(?:\s*m[³3]?\s*/?\s*h)?(?:\s+[AB]?\s*-?\s*[HV])?",
    re.IGNORECASE,
)
_RATIO_RE = re.compile(r"Q3/Q1\s*=\s*(\d+)")
_PN_RE = re.compile(r"PN([-:\s]*\d+\s*bar)", re.IGNORECASE)
_TEMP_RE = re.compile(r"(\d+(?:-\d+)?)\s*(?:℃|°\s*C?|C\b)")
_CLASS_RE = re.compile(r"CLASS[:\s]+([A-Z])")
_MULTIPLIER_RE = re.compile(r"X\s*0[,.]\d+", re.IGNORECASE)
_INLINE_ORIENTATION_RE = re.compile(r"([AB])\s*-\s*([HV])", re.IGNORECASE)
_ORIENTATION_RE = re.compile(
    r"(A-vertical|B-horizontal|BH/AV|AV/BH|H-B|V-A|B-H|A-V|B\.H|A\.V)",
    re.IGNORECASE,
)
_LATIN_NAME_RE = re.compile(r"[A-Z]{4,}")
_CYRILLIC_NAME_RE = re.compile(r"[Ѐ-ԯ]{4,}")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_ODOMETER_RE = re.compile(r"\d(?:\s+\d)+")
_UNIT_SUFFIX_RE = re.compile(r"\d+[Mm][³3]?$")
_UNIT_MARKERS = ("M3", "M³")


@dataclass
class _SpecBuilder:
    q3: str = ""
    q3_q1_ratio: str = ""
    pn: str = ""
    meter_class: str = ""
    multipliers: list[str] = field(default_factory=list)
    max_temp: str = ""
    orientation: str = ""

    def freeze(self) -> ModelSpecs:
        return ModelSpecs(
            q3=self.q3,
            q3_q1_ratio=self.q3_q1_ratio,
            pn=self.pn,
            meter_class=self.meter_class,
            multipliers=tuple(self.multipliers),
            max_temp=self.max_temp,
            orientation=self.orientation,
        )


@dataclass(frozen=True)
class _NumericLine:
    line: Line
    value: str

    @property
    def has_decimal(self) -> bool:
        return "." in self.value

    @property
    def length(self) -> int:
        return len(self.value.replace(".", ""))


def _inline_orientation(text: str) -> str:
    match = _INLINE_ORIENTATION_RE.search(text)
    if not match:
        return ""
    return "A-vertical" if match.group(1).upper() == "A" else "B-horizontal"


def _normalize_orientation(token: str) -> str:
    token = token.upper().replace(".", "-")
    if "BH" in token or "H-B" in token or "B-H" in token:
        return "B-horizontal"
    if "AV" in token or "V-A" in token or "A-V" in token:
        return "A-vertical"
    return token


class UtilityMeterParser:
    """Extracts nameplate data and the register reading from a meter photo.

    Args:
        config: Thresholds and keyword lists. Defaults apply when omitted.
    """

    def __init__(self, config: UtilityParserConfig | None = None) -> None:
        self.config = config or UtilityParserConfig()
        self.scorer = CandidateScorer(self.config.spatial)

    def parse(self, pages: Any) -> UtilityBill:
        """Parse recognition pages into a :class:`UtilityBill`."""
        bill, _ = self.parse_with_claims(pages)
        return bill

    def parse_with_claims(self, pages: Any) -> tuple[UtilityBill, Claims]:
        """Parse and also return the ledger of consumed lines."""
        claims = Claims()
        lines = normalize_pages(pages)
        if not lines:
            return UtilityBill(), claims

        standard = self._extract_standard(lines, claims)
        specs, anchors = self._extract_specs(lines, claims)
        manufacturer = self._extract_manufacturer(lines, claims, specs, anchors)
        unit = self._find_unit_marker(lines, normalize_pages(pages, min_length=1))
        serial, hint = self._split_serial_and_reading(lines, claims, unit)
        reading = self._extract_reading(lines, claims, serial, hint, unit)

        bill = UtilityBill(
            manufacturer=manufacturer,
            standard=standard,
            model_specs=specs.freeze(),
            serial_number=serial.value if serial else "",
            main_reading=reading,
        )
        logger.info(
            "Utility parse: manufacturer=%r serial=%r reading=%r (%d/%d lines claimed)",
            bill.manufacturer,
            bill.serial_number,
            bill.main_reading,
            len(claims),
            len(lines),
        )
        return bill, claims

    def _extract_standard(self, lines: list[Line], claims: Claims) -> str:
        for line in claims.free(lines):
            match = _ISO_RE.search(line.upper_text)
            if match:
                claims.claim(line, "standard")
                return f"ISO {match.group(1)}"
        return ""

    def _spec_rules(self, specs: _SpecBuilder) -> list[Rule[Line]]:
        def regex(pattern: re.Pattern[str], upper: bool = False):
            return lambda line: bool(
                pattern.search(line.upper_text if upper else line.text)
            )

        def flow(line: Line) -> tuple[str, str] | None:
            match = _FLOW_RE.search(line.text)
            if not match or not match.group(1):
                return None
            return f"Qn {match.group(1).replace(',', '.')} m³/h", _inline_orientation(
                line.text
            )

        def q3_label(line: Line) -> str | None:
            value = _Q3_LABEL_RE.search(line.text).group(1)
            value = _Q3_TAIL_RE.split(value, maxsplit=1)[0].strip()
            return value or None

        return [
            Rule("q3", regex(_Q3_LABEL_RE), q3_label, stop=False),
            Rule(
                "q3_flow",
                lambda line: not specs.q3 and bool(_FLOW_RE.search(line.text)),
                flow,
                stop=False,
            ),
            Rule(
                "q3_q1_ratio",
                regex(_RATIO_RE, upper=True),
                lambda line: _RATIO_RE.search(line.upper_text).group(1),
                stop=False,
            ),
            Rule(
                "pn",
                regex(_PN_RE),
                lambda line: _PN_RE.search(line.text).group(1).strip(" -:"),
                stop=False,
            ),
            Rule(
                "max_temp",
                lambda line: not specs.max_temp and bool(_TEMP_RE.search(line.text)),
                lambda line: (
                    _TEMP_RE.search(line.text).group(1) + "℃",
                    _inline_orientation(line.text),
                ),
                stop=False,
            ),
            Rule(
                "meter_class",
                regex(_CLASS_RE, upper=True),
                lambda line: _CLASS_RE.search(line.upper_text).group(1),
                stop=False,
            ),
            Rule(
                "multipliers",
                regex(_MULTIPLIER_RE),
                lambda line: [
                    re.sub(r"\s", "", m).replace(",", ".")
                    for m in _MULTIPLIER_RE.findall(line.text)
                ],
                stop=False,
            ),
            Rule(
                "orientation",
                lambda line: not specs.orientation
                and bool(_ORIENTATION_RE.search(line.text)),
                lambda line: _normalize_orientation(
                    _ORIENTATION_RE.search(line.text).group(1)
                ),
                stop=False,
            ),
        ]

    def _extract_specs(
        self, lines: list[Line], claims: Claims
    ) -> tuple[_SpecBuilder, list[float]]:
        specs = _SpecBuilder()
        anchors: list[float] = []
        rules = self._spec_rules(specs)

        for line in claims.free(lines):
            hits = apply_rules(rules, line)
            for hit in hits:
                if hit.name in ("q3_flow", "max_temp"):
                    value, orientation = hit.value
                    setattr(specs, "q3" if hit.name == "q3_flow" else hit.name, value)
                    if orientation and not specs.orientation:
                        specs.orientation = orientation
                elif hit.name == "multipliers":
                    specs.multipliers.extend(hit.value)
                else:
                    setattr(specs, hit.name, hit.value)
                if hit.name != "orientation":
                    anchors.append(line.mid_y)
            if hits:
                claims.claim(line, "modelSpecs")
        return specs, anchors

    def _extract_manufacturer(
        self,
        lines: list[Line],
        claims: Claims,
        specs: _SpecBuilder,
        anchors: list[float],
    ) -> str:
        noise = [kw.upper() for kw in self.config.spec_noise_keywords]
        noise.extend(m.upper() for m in specs.multipliers)
        cutoff = self.config.manufacturer_max_anchor_distance

        best: tuple[float, Line, str] | None = None
        for line in claims.free(lines):
            text = line.text
            if not (
                _LATIN_NAME_RE.fullmatch(text)
                or _CYRILLIC_NAME_RE.match(text)
                or "©" in text
            ):
                continue
            if any(keyword in line.upper_text for keyword in noise):
                continue
            name = text.replace("©", "").strip()
            if len(name) < 4:
                continue
            gap = min((abs(line.mid_y - y) for y in anchors), default=0.0)
            if cutoff is not None and anchors and gap >= cutoff:
                continue
            if best is None or gap < best[0]:
                best = (gap, line, name)

        if best is None:
            return ""
        claims.claim(best[1], "manufacturer")
        return best[2]

    def _find_unit_marker(
        self, lines: list[Line], fragments: list[Line]
    ) -> Anchor | None:
        for line in lines:
            if line.compact.upper() in _UNIT_MARKERS:
                return Anchor.from_line(line)
        for line in lines:
            if any(marker in line.compact.upper() for marker in _UNIT_MARKERS):
                return Anchor.from_line(line)

        limit = self.config.unit_pair_distance
        for i, line in enumerate(fragments):
            if line.upper_text != "M":
                continue
            for j in (i + 1, i - 1):
                if not 0 <= j < len(fragments):
                    continue
                other = fragments[j]
                if other.text not in ("3", "³"):
                    continue
                if distance(
                    (line.center_x, line.mid_y), (other.center_x, other.mid_y)
                ) <= limit:
                    return Anchor(
                        (line.center_x + other.center_x) / 2,
                        (line.mid_y + other.mid_y) / 2,
                    )
        return None

    def _numeric_lines(self, lines: list[Line], claims: Claims) -> list[_NumericLine]:
        found: list[_NumericLine] = []
        for line in claims.free(lines):
            if _ODOMETER_RE.fullmatch(line.text):
                continue
            match = _NUMBER_RE.search(line.compact)
            if not match:
                continue
            value = match.group(0)
            if len(value.replace(".", "")) >= self.config.min_serial_digits:
                found.append(_NumericLine(line, value))
        return found

    def _in_reading_window(self, candidate: _NumericLine, unit: Anchor) -> bool:
        spatial = self.config.spatial
        return (
            abs(candidate.line.center_x - unit.center_x) < spatial.max_horizontal_search
            and abs(candidate.line.mid_y - unit.mid_y) < spatial.max_vertical_search
        )

    def _split_serial_and_reading(
        self, lines: list[Line], claims: Claims, unit: Anchor | None
    ) -> tuple[_NumericLine | None, _NumericLine | None]:
        numbers = self._numeric_lines(lines, claims)
        serial: _NumericLine | None = None
        hint: _NumericLine | None = None

        if len(numbers) == 1:
            only = numbers[0]
            # A lone whole number sitting on the unit marker is the register.
            if unit is not None and not only.has_decimal and self._in_reading_window(
                only, unit
            ):
                hint = only
            else:
                serial = only
        elif numbers:
            decimals = [n for n in numbers if n.has_decimal]
            wholes = [n for n in numbers if not n.has_decimal]
            if decimals:
                serial = max(decimals, key=lambda n: n.length)
                if wholes:
                    hint = max(wholes, key=lambda n: n.length)
            else:
                ordered = sorted(numbers, key=lambda n: (n.has_decimal, n.line.mid_y))
                serial, hint = ordered[0], ordered[1]

        if serial is not None:
            claims.claim(serial.line, "serialNumber")
        logger.debug(
            "Serial candidates=%d serial=%r hint=%r",
            len(numbers),
            serial.value if serial else None,
            hint.value if hint else None,
        )
        return serial, hint

    def _extract_reading(
        self,
        lines: list[Line],
        claims: Claims,
        serial: _NumericLine | None,
        hint: _NumericLine | None,
        unit: Anchor | None,
    ) -> str:
        if hint is not None:
            claims.claim(hint.line, "mainReading")
            return hint.value

        serial_value = serial.value if serial else ""
        excluded = {serial_value, serial_value.replace(".", "")} - {""}

        if unit is not None:
            best = self.scorer.best(
                unit,
                claims.free(lines),
                lambda line: is_numerical(line.compact)
                and not is_barcode(line.compact)
                and line.compact not in excluded,
            )
            if best is None:
                return ""
            claims.claim(best.source_line, "mainReading")
            return best.value

        min_digits = self.config.min_fallback_reading_digits
        ranked: list[tuple[int, int, Line, str]] = []
        for line in claims.free(lines):
            compact = line.compact
            if _UNIT_SUFFIX_RE.search(line.text):
                numeric = re.sub(r"[Mm][³3]?$", "", compact)
                if (
                    is_numerical(numeric)
                    and len(numeric) >= min_digits
                    and numeric not in excluded
                ):
                    ranked.append((20, len(numeric), line, numeric))
                    continue
            if len(compact) < min_digits or compact in excluded:
                continue
            if re.fullmatch(r"[\d\s]+", line.text) and re.search(r"\s", line.text):
                ranked.append((10, len(compact), line, compact))
            elif is_numerical(compact) and not is_barcode(compact):
                ranked.append((0, len(compact), line, compact))

        if not ranked:
            return ""
        ranked.sort(key=lambda entry: (-entry[0], -entry[1]))
        _, _, line, value = ranked[0]
        claims.claim(line, "mainReading")
        return value

"""
Scenario record loading.

Fetches a scenario JSON from disk or over HTTP and turns it into a
``ScenarioRecord``. Malformed content is coerced to empty/zero values so the
console still starts; only an unreachable or undecodable file is an error.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
import structlog
from pydantic import ValidationError

from linacsim.core.config import Settings, get_settings
from linacsim.core.exceptions import ScenarioLoadError
from linacsim.core.models import ScenarioRecord, TreatmentField
from linacsim.utils.reliability import with_retry

logger = structlog.get_logger(__name__)


def derive_scenario_id(source: str) -> str:
    """Scenario id from a file name: ``data/A2_withErrors.json`` -> ``A2_withErrors``."""
    base = re.split(r"[\\/]", str(source or ""))[-1]
    base = re.sub(r"\?.*$", "", base)
    return re.sub(r"\.json$", "", base, flags=re.IGNORECASE) or "unknown"


def derive_error_present(source: str) -> Optional[bool]:
    """Study condition encoded in the file name, when it is."""
    f = str(source or "").lower()
    if "noerrors" in f:
        return False
    if "witherrors" in f:
        return True
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_text(*values: Any) -> Optional[str]:
    for v in values:
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def parse_fields(raw_fields: Any) -> List[TreatmentField]:
    """Parse the field list, skipping entries that are not objects."""
    if raw_fields is None:
        return []
    if not isinstance(raw_fields, list):
        logger.warning("Scenario fields are not a list; using none", got=type(raw_fields).__name__)
        return []

    fields = []
    for i, raw in enumerate(raw_fields):
        if not isinstance(raw, dict):
            logger.warning("Skipping malformed field", index=i)
            continue
        try:
            fields.append(TreatmentField.from_raw(raw))
        except ValidationError as e:
            logger.warning("Skipping invalid field", index=i, error=str(e))
    return fields


def parse_scenario(
    data: Any, source: str = "", scenario_id: Optional[str] = None
) -> ScenarioRecord:
    """Build a ``ScenarioRecord`` from decoded scenario JSON."""
    doc = _as_dict(data)
    if not doc:
        logger.warning("Scenario document is empty or not an object", source=source)

    plan = _as_dict(doc.get("treatmentPlan"))
    raw_fields = plan.get("treatmentFields")
    if raw_fields is None:
        raw_fields = doc.get("treatmentFields")

    patient = _as_dict(doc.get("patient")) or _as_dict(doc.get("patientInfo"))
    imaging = _as_dict(doc.get("imagingData"))

    record = ScenarioRecord(
        scenario_id=scenario_id or derive_scenario_id(source),
        source=source,
        patient_name=_first_text(patient.get("name"), doc.get("patientName")),
        plan_name=_first_text(plan.get("planName"), plan.get("name")),
        imaging_type=_first_text(plan.get("imagingType"), plan.get("imaging")),
        imaging_notes=_first_text(plan.get("imagingNotes"), doc.get("imagingNotes")),
        drr_image=_first_text(imaging.get("drrImage"), imaging.get("referenceImage")),
        overlay_image=_first_text(
            imaging.get("kvImage"), imaging.get("cbctImage"), imaging.get("overlayImage")
        ),
        error_present=derive_error_present(source),
        fields=parse_fields(raw_fields),
    )

    logger.info(
        "Scenario parsed",
        scenario_id=record.scenario_id,
        fields_count=len(record.fields),
        error_present=record.error_present,
    )
    return record


def _fetch_url(url: str, timeout: int, attempts: int) -> str:
    @with_retry(
        max_attempts=attempts,
        retry_exceptions=(requests.ConnectionError, requests.Timeout),
    )
    def get() -> str:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        return response.text

    return get()


def fetch_scenario_text(source: str, settings: Optional[Settings] = None) -> str:
    """Read the raw scenario document from a path or http(s) URL."""
    config = settings or get_settings()
    if not source:
        raise ScenarioLoadError("<none>", "Missing scenario file")

    if re.match(r"^https?://", source, flags=re.IGNORECASE):
        try:
            return _fetch_url(source, config.request_timeout, config.fetch_attempts)
        except requests.RequestException as e:
            raise ScenarioLoadError(source, f"HTTP fetch failed: {e}") from e

    try:
        return Path(source).read_text(encoding="utf-8")
    except OSError as e:
        raise ScenarioLoadError(source, f"Cannot read file: {e}") from e


def load_scenario(source: str, settings: Optional[Settings] = None) -> ScenarioRecord:
    """
    Fetch and parse a scenario.

    Raises:
        ScenarioLoadError: When the document cannot be fetched or is not JSON
    """
    text = fetch_scenario_text(source, settings)
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ScenarioLoadError(source, f"Invalid JSON: {e}") from e
    return parse_scenario(data, source=source)

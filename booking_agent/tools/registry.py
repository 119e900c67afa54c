"""The closed catalogue of booking tools the model may call.

Each ``ToolName`` maps to one ``ToolSpec`` carrying its model-facing schema,
its required parameters, whether it mutates bookings, which parameters the
semantic fallback could recover from conversation text, and an auto-fill
rule over ``Session``.  Dispatch everywhere is a lookup on the tag, so an
unknown name can only ever produce a refusal.

The model may call the tools directly, or through the single meta-tool
``call_booking_api`` whose ``function_name`` selects the real operation;
``resolve_call`` unwraps both into the same ``(ToolName, arguments)`` form.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from booking_agent.models import API_DATETIME_FORMAT, Session

logger = logging.getLogger(__name__)

META_TOOL_NAME = "call_booking_api"


class ToolName(str, Enum):
    FIND_PATIENT = "GetMultiplePatients"
    CREATE_PATIENT = "CreatePatient"
    LIST_APPOINTMENTS = "GetAppointments"
    FIND_SLOTS = "GetAvailableSlots"
    CREATE_APPOINTMENT = "CreateAppointment"
    UPDATE_APPOINTMENT = "UpdateAppointment"
    CANCEL_APPOINTMENT = "BreakAppointment"


AutoFill = Callable[[Session], dict[str, Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    properties: dict[str, dict[str, Any]]
    required: tuple[str, ...] = ()
    # At least one of these must be present
    any_of: tuple[str, ...] = ()
    mutating: bool = False
    # Parameter -> session field the semantic fallback can fill
    derivable: dict[str, str] = field(default_factory=dict)
    autofill: AutoFill = lambda session: {}

    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": self.properties,
            "required": list(self.required),
        }


# ── Auto-fill rules ──────────────────────────────────────────────────


def _fill_find_patient(session: Session) -> dict[str, Any]:
    p = session.patient
    return {"LName": p.last_name, "FName": p.first_name, "Phone": p.phone}


def _fill_create_patient(session: Session) -> dict[str, Any]:
    p = session.patient
    return {
        "FName": p.first_name,
        "LName": p.last_name,
        "Birthdate": p.birthdate,
        "WirelessPhone": p.phone,
    }


def _fill_list_appointments(session: Session) -> dict[str, Any]:
    return {"PatNum": session.patient.patient_id}


def _fill_find_slots(session: Session) -> dict[str, Any]:
    day = session.appointment.preferred_date
    return {"dateStart": day, "dateEnd": day}


def _slot_fields(session: Session) -> dict[str, Any]:
    slot = session.appointment.selected_slot
    if slot is None:
        return {}
    return {"AptDateTime": slot.api_datetime, "ProvNum": slot.provider_id, "Op": slot.room_id}


def _fill_create_appointment(session: Session) -> dict[str, Any]:
    return {
        "PatNum": session.patient.patient_id,
        **_slot_fields(session),
        "Note": session.appointment.appointment_type,
    }


def _fill_update_appointment(session: Session) -> dict[str, Any]:
    return {"AptNum": session.appointment.existing_appointment_id, **_slot_fields(session)}


def _fill_cancel_appointment(session: Session) -> dict[str, Any]:
    return {"AptNum": session.appointment.existing_appointment_id}


# ── Catalogue ────────────────────────────────────────────────────────

_INT = {"type": "integer"}
_DATE = {"type": "string", "description": "YYYY-MM-DD"}
_DATETIME = {"type": "string", "description": "YYYY-MM-DD HH:MM:SS"}

TOOL_SPECS: dict[ToolName, ToolSpec] = {
    ToolName.FIND_PATIENT: ToolSpec(
        name=ToolName.FIND_PATIENT,
        description="Search existing patients by last name, first name and/or phone.",
        properties={
            "LName": {"type": "string"},
            "FName": {"type": "string"},
            "Phone": {"type": "string", "description": "10 digits"},
            "PatNum": _INT,
        },
        any_of=("LName", "FName", "Phone", "PatNum"),
        derivable={"LName": "last_name", "FName": "first_name", "Phone": "phone"},
        autofill=_fill_find_patient,
    ),
    ToolName.CREATE_PATIENT: ToolSpec(
        name=ToolName.CREATE_PATIENT,
        description="Register a new patient. Only for patients who said they are new.",
        properties={
            "FName": {"type": "string"},
            "LName": {"type": "string"},
            "Birthdate": _DATE,
            "WirelessPhone": {"type": "string", "description": "10 digits"},
        },
        required=("FName", "LName", "Birthdate", "WirelessPhone"),
        derivable={
            "FName": "first_name", "LName": "last_name",
            "Birthdate": "birthdate", "WirelessPhone": "phone",
        },
        autofill=_fill_create_patient,
    ),
    ToolName.LIST_APPOINTMENTS: ToolSpec(
        name=ToolName.LIST_APPOINTMENTS,
        description="List a patient's appointments.",
        properties={"PatNum": _INT, "DateStart": _DATE, "DateEnd": _DATE},
        required=("PatNum",),
        autofill=_fill_list_appointments,
    ),
    ToolName.FIND_SLOTS: ToolSpec(
        name=ToolName.FIND_SLOTS,
        description="Find open appointment slots between two dates (inclusive).",
        properties={
            "dateStart": _DATE,
            "dateEnd": _DATE,
            "ProvNum": _INT,
            "OpNum": _INT,
            "lengthMinutes": _INT,
        },
        required=("dateStart", "dateEnd"),
        derivable={"dateStart": "preferred_date", "dateEnd": "preferred_date"},
        autofill=_fill_find_slots,
    ),
    ToolName.CREATE_APPOINTMENT: ToolSpec(
        name=ToolName.CREATE_APPOINTMENT,
        description="Book the slot the patient explicitly chose.",
        properties={
            "PatNum": _INT,
            "AptDateTime": _DATETIME,
            "ProvNum": _INT,
            "Op": _INT,
            "Note": {"type": "string"},
        },
        required=("PatNum", "AptDateTime", "ProvNum", "Op"),
        mutating=True,
        autofill=_fill_create_appointment,
    ),
    ToolName.UPDATE_APPOINTMENT: ToolSpec(
        name=ToolName.UPDATE_APPOINTMENT,
        description="Move an existing appointment to the slot the patient chose.",
        properties={
            "AptNum": _INT,
            "AptDateTime": _DATETIME,
            "ProvNum": _INT,
            "Op": _INT,
            "Note": {"type": "string"},
        },
        required=("AptNum", "AptDateTime"),
        mutating=True,
        autofill=_fill_update_appointment,
    ),
    ToolName.CANCEL_APPOINTMENT: ToolSpec(
        name=ToolName.CANCEL_APPOINTMENT,
        description="Cancel (break) an existing appointment.",
        properties={"AptNum": _INT, "Note": {"type": "string"}},
        required=("AptNum",),
        mutating=True,
        autofill=_fill_cancel_appointment,
    ),
}


def tool_definitions(*, include_meta_tool: bool = False) -> list[dict[str, Any]]:
    """Anthropic-format tool definitions for ``bind_tools``."""
    tools = [
        {"name": spec.name.value, "description": spec.description, "input_schema": spec.input_schema()}
        for spec in TOOL_SPECS.values()
    ]
    if include_meta_tool:
        tools.append({
            "name": META_TOOL_NAME,
            "description": "Call any booking function by name.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "function_name": {"type": "string", "enum": [t.value for t in ToolName]},
                    "parameters": {"type": "object"},
                },
                "required": ["function_name"],
            },
        })
    return tools


def resolve_call(name: str, arguments: dict[str, Any] | None) -> tuple[ToolName | None, dict[str, Any]]:
    """Map a raw model call (direct or meta-tool) to a known tool."""
    arguments = dict(arguments or {})
    if name == META_TOOL_NAME:
        name = str(arguments.get("function_name", ""))
        inner = arguments.get("parameters")
        arguments = dict(inner) if isinstance(inner, dict) else {}
    try:
        return ToolName(name), arguments
    except ValueError:
        return None, arguments


# ── Validation ───────────────────────────────────────────────────────


def _present(value: Any) -> bool:
    return value is not None and not (isinstance(value, str) and not value.strip())


def apply_autofill(spec: ToolSpec, session: Session, arguments: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Fill absent parameters from state; model-supplied values always win.

    For patient search the state is only used when the model gave no
    search field at all, so a deliberate narrow search stays narrow.
    """
    filled = {k: v for k, v in arguments.items() if _present(v)}
    if spec.name is ToolName.FIND_PATIENT and any(k in filled for k in spec.any_of):
        return filled, []

    auto: list[str] = []
    for param, value in spec.autofill(session).items():
        if param not in filled and _present(value):
            filled[param] = value
            auto.append(param)
    return filled, auto


def missing_parameters(spec: ToolSpec, arguments: dict[str, Any]) -> list[str]:
    missing = [p for p in spec.required if not _present(arguments.get(p))]
    if spec.any_of and not any(_present(arguments.get(p)) for p in spec.any_of):
        missing.append(" or ".join(spec.any_of))
    return missing


def _digits(value: Any) -> str:
    return re.sub(r"\D", "", str(value))


def invalid_parameters(spec: ToolSpec, arguments: dict[str, Any], today: date) -> dict[str, str]:
    """Format problems in supplied values, keyed by parameter name."""
    problems: dict[str, str] = {}
    for param, value in arguments.items():
        if not _present(value):
            continue
        if param in ("Phone", "WirelessPhone") and len(_digits(value)) != 10:
            problems[param] = "must be a 10-digit phone number"
        elif param == "Birthdate":
            try:
                born = date.fromisoformat(str(value))
            except ValueError:
                problems[param] = "must be YYYY-MM-DD"
                continue
            if not date(1900, 1, 1) <= born < today:
                problems[param] = "must be a past date"
        elif param in ("dateStart", "dateEnd", "DateStart", "DateEnd"):
            try:
                date.fromisoformat(str(value))
            except ValueError:
                problems[param] = "must be YYYY-MM-DD"
        elif param == "AptDateTime":
            try:
                datetime.strptime(str(value), API_DATETIME_FORMAT)
            except ValueError:
                problems[param] = "must be YYYY-MM-DD HH:MM:SS"
        elif param in ("PatNum", "AptNum", "ProvNum", "Op", "OpNum"):
            try:
                int(value)
            except (TypeError, ValueError):
                problems[param] = "must be a number returned by a previous tool"
    return problems


def normalize_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    """Backend-ready values: digits-only phones and integer ids."""
    normalized = dict(arguments)
    for param in ("Phone", "WirelessPhone"):
        if param in normalized:
            normalized[param] = _digits(normalized[param])
    for param in ("PatNum", "AptNum", "ProvNum", "Op", "OpNum"):
        if param in normalized:
            normalized[param] = int(normalized[param])
    return normalized


# What the patient has to supply when a parameter is missing
_ASK_FOR = {
    "PatNum": "their name or phone number so their patient record can be found",
    "AptNum": "which appointment they mean (their name or phone number to look it up)",
    "AptDateTime": "which of the offered times they want",
    "ProvNum": "which of the offered times they want",
    "Op": "which of the offered times they want",
    "FName": "their first name",
    "LName": "their last name",
    "Birthdate": "their date of birth",
    "WirelessPhone": "their mobile phone number",
    "dateStart": "the day they would like to come in",
    "dateEnd": "the day they would like to come in",
}


def refusal(
    tool: str,
    *,
    missing: list[str] | tuple[str, ...] = (),
    invalid: dict[str, str] | None = None,
    have: dict[str, Any] | None = None,
    reason: str | None = None,
) -> dict[str, Any]:
    """Structured "do not execute" result fed back to the model."""
    invalid = invalid or {}
    asks: list[str] = []
    for param in missing:
        ask = _ASK_FOR.get(param, param)
        if ask not in asks:
            asks.append(ask)
    asks += [f"{param} ({problem})" for param, problem in invalid.items()]
    if reason is None:
        reason = f"{tool} cannot run yet: required information is missing or invalid."
    return {
        "error": True,
        "validation_error": True,
        "action": "MUST_ASK_USER",
        "tool": tool,
        "reason": reason,
        "missing": list(missing),
        "invalid": invalid,
        "have": {k: v for k, v in (have or {}).items() if _present(v)},
        "instruction": (
            f"Ask the patient for {'; '.join(asks)}. "
            "Do not invent values and do not call a different tool to work around this."
            if asks else
            "Ask the patient how they would like to proceed. Do not invent values."
        ),
    }

"""roster_sync.record

Typed access to raw export records and the source → roster column mapping.

Export records are loose JSON objects whose shape drifts between exports:
fields appear and disappear, and some (dob, branchDesc, workplaceDesc,
employerName) arrive wrapped in single-element arrays.  Missing values map
to NULL instead of failing the record; only the membership number is
required.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from roster_sync.config import SyncSettings
from roster_sync.normalize import (
    build_display_name,
    is_valid_email,
    is_valid_mobile,
    trim,
    unwrap_markdown_email,
)
from roster_sync.shared import RecordError


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class RawRecord:
    """Read-only accessor over one JSON export record."""

    def __init__(self, data: Mapping[str, Any]) -> None:
        self._data = data

    def get(self, name: str) -> str | None:
        """Scalar value as text; None for missing, null, or container values."""
        return _as_text(self._data.get(name))

    def get_first(self, name: str) -> str | None:
        """First element of an array field.  A bare scalar is accepted as-is."""
        value = self._data.get(name)
        if isinstance(value, list):
            return _as_text(value[0]) if value else None
        return _as_text(value)

    def __contains__(self, name: str) -> bool:
        return name in self._data


# ---------------------------------------------------------------------------
# Field mapping table
# ---------------------------------------------------------------------------

Transform = Literal["value", "first"]


@dataclass(frozen=True)
class FieldMapping:
    source_key: str
    column: str
    transform: Transform = "value"

    def extract(self, record: RawRecord) -> str | None:
        if self.transform == "first":
            return record.get_first(self.source_key)
        return record.get(self.source_key)


FIELD_MAP: tuple[FieldMapping, ...] = (
    # Person
    FieldMapping("fore1", "fore1"),
    FieldMapping("knownAs", "known_as"),
    FieldMapping("surname", "surname"),
    FieldMapping("dob", "dob", "first"),
    FieldMapping("ageOfMember", "age_of_member"),
    FieldMapping("genderDesc", "gender_desc"),
    FieldMapping("ethnicRegionDesc", "ethnic_region_desc"),
    FieldMapping("ethnicOriginDesc", "ethnic_origin_desc"),
    # Employment
    FieldMapping("employmentStatus", "employment_status"),
    FieldMapping("payrollNumber", "payroll_number"),
    FieldMapping("siteCode", "site_code"),
    FieldMapping("siteIndustryDesc", "site_industry_desc"),
    FieldMapping("siteSubIndustryDesc", "site_sub_industry_desc"),
    FieldMapping("membershipTypeDesc", "membership_type_desc"),
    FieldMapping("bargainingGroupDesc", "bargaining_group_desc"),
    FieldMapping("workplaceDesc", "workplace_desc", "first"),
    FieldMapping("sitePrimOrgName", "site_prim_org_name"),
    FieldMapping("orgTeamPDescEpmu", "org_team_p_desc_epmu"),
    FieldMapping("directorName", "director_name"),
    FieldMapping("subIndSector", "sub_ind_sector"),
    FieldMapping("jobTitle", "job_title"),
    FieldMapping("department", "department"),
    FieldMapping("location", "location"),
    # Secondary contact
    FieldMapping("phoneHome", "phone_home"),
    FieldMapping("phoneWork", "phone_work"),
    FieldMapping("address", "address"),
    # Region / organisation
    FieldMapping("regionDesc", "region_desc"),
    FieldMapping("regionDesc", "region"),
    FieldMapping("branchDesc", "branch", "first"),
    FieldMapping("bargainingGroupDesc", "bargaining_group"),
    FieldMapping("workplaceDesc", "workplace", "first"),
    FieldMapping("employerName", "employer", "first"),
    # Financial / residential
    FieldMapping("financialIndicatorDescription", "financial_indicator_description"),
    FieldMapping("employeeRef", "employee_ref"),
    FieldMapping("addRes1", "add_res1"),
    FieldMapping("addRes2", "add_res2"),
    FieldMapping("addRes3", "add_res3"),
    FieldMapping("addRes4", "add_res4"),
    FieldMapping("addRes5", "add_res5"),
    FieldMapping("addResPc", "add_res_pc"),
    FieldMapping("occupation", "occupation"),
    FieldMapping("forumDesc", "forum_desc"),
    FieldMapping("lastPaymentDate", "last_payment_date"),
    FieldMapping("epmuMemTypeDesc", "epmu_mem_type_desc"),
)

DESCRIPTIVE_COLUMNS: tuple[str, ...] = tuple(m.column for m in FIELD_MAP)


# ---------------------------------------------------------------------------
# Mapped record
# ---------------------------------------------------------------------------

@dataclass
class MemberRecord:
    membership_number: str
    name: str
    primary_email: str | None
    telephone_mobile: str | None
    has_valid_email: bool
    has_valid_mobile: bool
    fields: dict[str, str | None] = field(default_factory=dict)


def map_record(data: Any, settings: SyncSettings) -> MemberRecord:
    """Map one export record onto roster columns.

    Raises RecordError for non-object records and records without a
    membership number.
    """
    if not isinstance(data, Mapping):
        raise RecordError(f"record is {type(data).__name__}, expected object")
    raw = RawRecord(data)

    membership_number = trim(raw.get("membershipNumber"))
    if membership_number is None:
        raise RecordError("missing membershipNumber")

    primary_email = trim(unwrap_markdown_email(raw.get("primaryEmail")))
    telephone_mobile = trim(raw.get("telephoneMobile"))

    return MemberRecord(
        membership_number=membership_number,
        name=build_display_name(raw.get("fore1"), raw.get("surname"), membership_number),
        primary_email=primary_email,
        telephone_mobile=telephone_mobile,
        has_valid_email=is_valid_email(primary_email, settings.placeholder_regexes),
        has_valid_mobile=is_valid_mobile(telephone_mobile, settings.min_mobile_length),
        fields={m.column: m.extract(raw) for m in FIELD_MAP},
    )

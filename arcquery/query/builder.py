"""Predicate and join composition shared by all level queries.

Matching follows the DICOM C-FIND rules: an empty key matches everything,
``*``/``?`` request wildcard matching, ``a-b`` on dates and times requests
range matching and backslash separated UIDs request list of UID matching.
"""

from enum import Enum
from typing import Any, NamedTuple

from pydicom import Dataset
from pydicom.dataelem import DataElement
from sqlalchemy import and_, exists, func, literal, or_, select
from sqlalchemy.orm import InstrumentedAttribute, aliased
from sqlalchemy.sql import ColumnElement, Select
from sqlalchemy.sql.selectable import FromClause, Join
from sqlmodel import SQLModel

from arcquery.exceptions import QueryBuildError
from arcquery.models import Instance, Patient, QueryRetrieveLevel, Series, Study
from arcquery.query.params import IDWithIssuer, QueryParameters, contains_wildcard
from arcquery.utils.fuzzy import fuzzy_key
from arcquery.utils.logger import logger

PATIENT = QueryRetrieveLevel.PATIENT
STUDY = QueryRetrieveLevel.STUDY
SERIES = QueryRetrieveLevel.SERIES
IMAGE = QueryRetrieveLevel.IMAGE

ENTITIES: dict[QueryRetrieveLevel, type[SQLModel]] = {
    PATIENT: Patient,
    STUDY: Study,
    SERIES: Series,
    IMAGE: Instance,
}

_PARENT_FK = {STUDY: "patient_fk", SERIES: "study_fk", IMAGE: "series_fk"}

LIKE_ESCAPE = "!"


class MatchKind(str, Enum):
    """How the value of a matching key is compared with its column."""

    TEXT = "TEXT"
    PERSON_NAME = "PERSON_NAME"
    DATE = "DATE"
    TIME = "TIME"
    UID = "UID"
    NUMBER = "NUMBER"


class MatchingKey(NamedTuple):
    level: QueryRetrieveLevel
    column: InstrumentedAttribute
    kind: MatchKind
    fuzzy_column: InstrumentedAttribute | None = None


MATCHING_KEYS: dict[str, MatchingKey] = {
    "PatientName": MatchingKey(
        PATIENT, Patient.patient_name, MatchKind.PERSON_NAME, Patient.patient_name_fuzzy
    ),
    "PatientBirthDate": MatchingKey(PATIENT, Patient.patient_birth_date, MatchKind.DATE),
    "PatientSex": MatchingKey(PATIENT, Patient.patient_sex, MatchKind.TEXT),
    "StudyInstanceUID": MatchingKey(STUDY, Study.study_iuid, MatchKind.UID),
    "StudyID": MatchingKey(STUDY, Study.study_id, MatchKind.TEXT),
    "StudyDate": MatchingKey(STUDY, Study.study_date, MatchKind.DATE),
    "StudyTime": MatchingKey(STUDY, Study.study_time, MatchKind.TIME),
    "AccessionNumber": MatchingKey(STUDY, Study.accession_number, MatchKind.TEXT),
    "StudyDescription": MatchingKey(STUDY, Study.study_description, MatchKind.TEXT),
    "ReferringPhysicianName": MatchingKey(
        STUDY, Study.referring_physician_name, MatchKind.PERSON_NAME
    ),
    "SeriesInstanceUID": MatchingKey(SERIES, Series.series_iuid, MatchKind.UID),
    "SeriesNumber": MatchingKey(SERIES, Series.series_number, MatchKind.NUMBER),
    "Modality": MatchingKey(SERIES, Series.modality, MatchKind.TEXT),
    "SeriesDescription": MatchingKey(SERIES, Series.series_description, MatchKind.TEXT),
    "BodyPartExamined": MatchingKey(SERIES, Series.body_part_examined, MatchKind.TEXT),
    "InstitutionName": MatchingKey(SERIES, Series.institution_name, MatchKind.TEXT),
    "SOPInstanceUID": MatchingKey(IMAGE, Instance.sop_iuid, MatchKind.UID),
    "SOPClassUID": MatchingKey(IMAGE, Instance.sop_cuid, MatchKind.UID),
    "InstanceNumber": MatchingKey(IMAGE, Instance.instance_number, MatchKind.NUMBER),
}

# Keys matched by dedicated predicates
IDENTITY_KEYS = frozenset({"PatientID", "IssuerOfPatientID"})
STUDY_AGGREGATE_KEYS = frozenset({"ModalitiesInStudy"})

# Keys that may carry a value without taking part in matching
IGNORED_KEYS = frozenset({"QueryRetrieveLevel", "SpecificCharacterSet", "TimezoneOffsetFromUTC"})

_LATEST_TIME = "235959.999999"


def _is_universal_sequence(elem: DataElement) -> bool:
    return all(all(child.is_empty for child in item) for item in elem.value)


def check_keys(keys: Dataset) -> None:
    """Verify that every non-empty requested key has a matching rule.

    Raises:
        QueryBuildError: For the first key that cannot be matched
    """
    for elem in keys:
        if elem.is_empty or elem.keyword in IGNORED_KEYS:
            continue
        if elem.keyword in MATCHING_KEYS or elem.keyword in IDENTITY_KEYS:
            continue
        if elem.keyword in STUDY_AGGREGATE_KEYS:
            continue
        if elem.VR == "SQ" and _is_universal_sequence(elem):
            continue
        raise QueryBuildError(elem.keyword or str(elem.tag), "no matching rule for non-empty value")


def _escape_like(value: str) -> str:
    for c in (LIKE_ESCAPE, "%", "_"):
        value = value.replace(c, LIKE_ESCAPE + c)
    return value


def _wildcard(column: Any, value: str, ignore_case: bool) -> ColumnElement[bool]:
    pattern = _escape_like(value).replace("*", "%").replace("?", "_")
    if ignore_case:
        return func.upper(column).like(pattern.upper(), escape=LIKE_ESCAPE)
    return column.like(pattern, escape=LIKE_ESCAPE)


def _range(column: Any, value: str, kind: MatchKind) -> ColumnElement[bool] | None:
    start, _, end = value.partition("-")
    start, end = start.strip(), end.strip()
    if end and kind is MatchKind.TIME:
        # "1015" ends at 10:15:59.999999
        end += _LATEST_TIME[len(end) :]
    if start and end:
        return column.between(start, end)
    if start:
        return column >= start
    if end:
        return column <= end
    return None


def match_element(key: MatchingKey, elem: DataElement, params: QueryParameters) -> ColumnElement[bool] | None:
    """Build the predicate for one requested key.

    Returns:
        The predicate, or None for universal matching

    Raises:
        QueryBuildError: If the value is not valid for the attribute
    """
    if elem.is_empty:
        return None

    column = key.column
    values = [str(v) for v in elem.value] if elem.VM > 1 else [str(elem.value)]
    value = values[0]
    cond: ColumnElement[bool] | None

    if len(values) > 1:
        if key.kind not in (MatchKind.UID, MatchKind.TEXT):
            raise QueryBuildError(elem.keyword, "multiple values only supported for UIDs and codes")
        cond = column.in_(values)
    elif key.kind is MatchKind.UID:
        cond = column == value
    elif key.kind in (MatchKind.DATE, MatchKind.TIME) and "-" in value:
        cond = _range(column, value, key.kind)
    elif contains_wildcard(value):
        if not value.strip("*"):
            return None
        cond = _wildcard(column, value, ignore_case=key.kind is MatchKind.PERSON_NAME)
    elif key.kind is MatchKind.PERSON_NAME and params.fuzzy and key.fuzzy_column is not None:
        phonetic = fuzzy_key(value)
        if phonetic is None:
            cond = column == value
        else:
            cond = key.fuzzy_column.like(f"{phonetic}%")
    elif key.kind is MatchKind.NUMBER:
        try:
            cond = column == int(value)
        except ValueError as e:
            raise QueryBuildError(elem.keyword, f"'{value}' is not a number") from e
    else:
        cond = column == value

    if cond is None:
        return None
    if params.match_unknown and key.kind is not MatchKind.UID:
        cond = or_(cond, column.is_(None))
    return cond


def _level_conditions(
    level: QueryRetrieveLevel, keys: Dataset, params: QueryParameters
) -> list[ColumnElement[bool]]:
    conditions = []
    for elem in keys:
        key = MATCHING_KEYS.get(elem.keyword)
        if key is None or key.level is not level:
            continue
        cond = match_element(key, elem, params)
        if cond is not None:
            conditions.append(cond)
    return conditions


def identity_predicate(
    patient_ids: list[IDWithIssuer], params: QueryParameters
) -> ColumnElement[bool] | None:
    """Match the patient against any of the identity filters.

    A filter with a wildcard identifier disables the identity constraint.
    """
    if not patient_ids or any(pid.has_wildcard for pid in patient_ids):
        return None
    alternatives = []
    for pid in patient_ids:
        cond = Patient.patient_id == pid.id
        if pid.issuer is not None:
            issuer_cond = Patient.issuer_of_patient_id == pid.issuer
            if params.match_unknown:
                issuer_cond = or_(issuer_cond, Patient.issuer_of_patient_id.is_(None))
            cond = and_(cond, issuer_cond)
        alternatives.append(cond)
    return or_(*alternatives)


def patient_level_predicates(
    keys: Dataset, patient_ids: list[IDWithIssuer], params: QueryParameters
) -> list[ColumnElement[bool]]:
    """Identity, name, birth date and sex predicates."""
    conditions = []
    identity = identity_predicate(patient_ids, params)
    if identity is not None:
        conditions.append(identity)
    pid_elem = keys["PatientID"] if "PatientID" in keys else None
    if pid_elem is not None and not pid_elem.is_empty and contains_wildcard(str(pid_elem.value)):
        pid_match = match_element(
            MatchingKey(PATIENT, Patient.patient_id, MatchKind.TEXT), pid_elem, params
        )
        if pid_match is not None:
            conditions.append(pid_match)
    conditions.extend(_level_conditions(PATIENT, keys, params))
    return conditions


def _modalities_in_study(elem: DataElement, params: QueryParameters) -> ColumnElement[bool] | None:
    series = aliased(Series)
    cond = match_element(MatchingKey(SERIES, series.modality, MatchKind.TEXT), elem, params)
    if cond is None:
        return None
    # Only series with visible instances contribute to ModalitiesInStudy
    return exists(
        select(series.pk)
        .join(Instance, Instance.series_fk == series.pk)
        .where(series.study_fk == Study.pk, cond, *visibility_predicates(params))
        .correlate(Study)
    )


def study_level_predicates(keys: Dataset, params: QueryParameters) -> list[ColumnElement[bool]]:
    """Study attribute predicates, including ModalitiesInStudy."""
    conditions = _level_conditions(STUDY, keys, params)
    modalities = keys["ModalitiesInStudy"] if "ModalitiesInStudy" in keys else None
    if modalities is not None:
        cond = _modalities_in_study(modalities, params)
        if cond is not None:
            conditions.append(cond)
    return conditions


def series_level_predicates(keys: Dataset, params: QueryParameters) -> list[ColumnElement[bool]]:
    return _level_conditions(SERIES, keys, params)


def instance_level_predicates(keys: Dataset, params: QueryParameters) -> list[ColumnElement[bool]]:
    return _level_conditions(IMAGE, keys, params) + visibility_predicates(params)


def visibility_predicates(params: QueryParameters) -> list[ColumnElement[bool]]:
    """Conditions an instance must meet to be visible under ``params``."""
    conditions = []
    if not params.show_rejected:
        conditions.append(Instance.rejection_code.is_(None))
    if params.accessible_aets:
        delimited = literal("\\") + func.coalesce(Instance.retrieve_aets, "") + literal("\\")
        conditions.append(
            or_(
                *(
                    delimited.like(f"%\\{_escape_like(aet)}\\%", escape=LIKE_ESCAPE)
                    for aet in params.accessible_aets
                ),
                Instance.external_retrieve_aet.in_(params.accessible_aets),
            )
        )
    return conditions


def ancestor_predicates(
    level: QueryRetrieveLevel,
    keys: Dataset,
    patient_ids: list[IDWithIssuer],
    params: QueryParameters,
) -> list[ColumnElement[bool]]:
    """Predicates of ``level`` and every level above it."""
    conditions = patient_level_predicates(keys, patient_ids, params)
    if level.depth >= STUDY.depth:
        conditions += study_level_predicates(keys, params)
    if level.depth >= SERIES.depth:
        conditions += series_level_predicates(keys, params)
    if level is IMAGE:
        conditions += instance_level_predicates(keys, params)
    return conditions


def relational_predicates(
    level: QueryRetrieveLevel, keys: Dataset, params: QueryParameters
) -> list[ColumnElement[bool]]:
    """EXISTS predicates letting descendant keys constrain ``level``.

    Descendant keys are ignored unless relational matching is enabled.
    """
    by_level = {lvl: _level_conditions(lvl, keys, params) for lvl in level.descendants()}
    constrained = [lvl for lvl, conds in by_level.items() if conds]
    if not constrained:
        return []
    if not params.relational:
        logger.debug(f"Relational matching disabled, ignoring keys below {level.value} level")
        return []

    deepest = constrained[-1]
    chain = [lvl for lvl in level.descendants() if lvl.depth <= deepest.depth]
    first = ENTITIES[chain[0]]
    subquery = select(first.pk)
    parent = first
    for lvl in chain[1:]:
        entity = ENTITIES[lvl]
        subquery = subquery.join(entity, getattr(entity, _PARENT_FK[lvl]) == parent.pk)
        parent = entity

    conditions = [getattr(first, _PARENT_FK[chain[0]]) == ENTITIES[level].pk]
    for lvl in chain:
        conditions += by_level[lvl]
    if IMAGE in chain:
        conditions += visibility_predicates(params)
    return [exists(subquery.where(*conditions))]


class JoinStep(NamedTuple):
    """Join of ``parent`` onto ``child`` through ``child.<foreign_key>``."""

    child: type[SQLModel]
    foreign_key: str
    parent: type[SQLModel]

    def onclause(self) -> ColumnElement[bool]:
        return getattr(self.child, self.foreign_key) == self.parent.pk


def join_chain(level: QueryRetrieveLevel) -> tuple[JoinStep, ...]:
    """Canonical ancestor-ward join path of ``level``, nearest ancestor first."""
    steps = []
    child = level
    for parent in level.ancestors():
        steps.append(JoinStep(ENTITIES[child], _PARENT_FK[child], ENTITIES[parent]))
        child = parent
    return tuple(steps)


def _joined_tables(statement: Select) -> set[FromClause]:
    tables: set[FromClause] = set()

    def collect(from_: FromClause) -> None:
        if isinstance(from_, Join):
            collect(from_.left)
            collect(from_.right)
        else:
            tables.add(from_)

    for from_ in statement.get_final_froms():
        if isinstance(from_, Join):
            collect(from_)
    return tables


def apply_join_chain(statement: Select, level: QueryRetrieveLevel) -> Select:
    """Join every ancestor of ``level`` not joined yet."""
    joined = _joined_tables(statement)
    for step in join_chain(level):
        table = step.parent.__table__
        if table in joined:
            continue
        statement = statement.join(step.parent, step.onclause())
        joined.add(table)
    return statement

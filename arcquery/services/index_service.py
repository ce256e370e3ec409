"""Service layer for indexing stored objects into the query tables."""

from typing import Any

from pydicom import Dataset
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

from arcquery.exceptions import IndexingError
from arcquery.models import Availability, Instance, Patient, Series, Study
from arcquery.settings import Settings, settings
from arcquery.utils.attributes import encode, filter_attributes
from arcquery.utils.fuzzy import fuzzy_key
from arcquery.utils.logger import logger

REQUIRED_KEYWORDS = ("StudyInstanceUID", "SeriesInstanceUID", "SOPInstanceUID", "SOPClassUID")


def _text(ds: Dataset, keyword: str) -> str | None:
    value = ds.get(keyword)
    if value is None or str(value) == "":
        return None
    return str(value)


def _number(ds: Dataset, keyword: str) -> int | None:
    value = _text(ds, keyword)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {keyword} '{value}'")
        return None


class IndexService:
    """Service creating the patient, study, series and instance rows of objects."""

    def __init__(self, session: AsyncSession, config: Settings | None = None):
        """Initialize the index service.

        Args:
            session: Database session
            config: Settings supplying attribute filters and default AE titles
        """
        self.session = session
        self.config = config or settings

    async def _get_by(self, model: type[SQLModel], **filters: Any) -> Any:
        statement = select(model)
        for field, value in filters.items():
            column = getattr(model, field)
            statement = statement.where(column.is_(None) if value is None else column == value)
        result = await self.session.execute(statement)
        return result.scalars().first()

    async def store(
        self,
        ds: Dataset,
        retrieve_aets: list[str] | None = None,
        availability: Availability = Availability.ONLINE,
        external_retrieve_aet: str | None = None,
    ) -> Instance:
        """Index an object, creating the missing rows of its hierarchy.

        Args:
            ds: Attributes of the object
            retrieve_aets: AE titles the object can be retrieved from;
                defaults to the configured ``retrieve_aets``
            availability: Availability of the object
            external_retrieve_aet: AE title of an external archive holding the object

        Returns:
            The instance row; the existing one if the object was already indexed

        Raises:
            IndexingError: If a required UID is missing
        """
        missing = [keyword for keyword in REQUIRED_KEYWORDS if not _text(ds, keyword)]
        if missing:
            raise IndexingError(f"Cannot index object without {', '.join(missing)}")

        existing = await self._get_by(Instance, sop_iuid=_text(ds, "SOPInstanceUID"))
        if existing is not None:
            logger.warning(f"Instance {existing.sop_iuid} already indexed")
            return existing

        patient = await self._get_or_create_patient(ds)
        study = await self._get_or_create_study(ds, patient)
        series = await self._get_or_create_series(ds, study)

        aets = self.config.retrieve_aets if retrieve_aets is None else retrieve_aets
        instance = Instance(
            series_fk=series.pk,
            sop_iuid=_text(ds, "SOPInstanceUID"),
            sop_cuid=_text(ds, "SOPClassUID"),
            instance_number=_number(ds, "InstanceNumber"),
            retrieve_aets="\\".join(aets) or None,
            external_retrieve_aet=external_retrieve_aet,
            availability=availability,
            attributes=encode(filter_attributes(ds, self.config.instance_attributes)),
        )
        series_iuid = series.series_iuid
        self.session.add(instance)
        await self.session.commit()
        await self.session.refresh(instance)
        logger.debug(f"Indexed instance {instance.sop_iuid} of series {series_iuid}")
        return instance

    async def _get_or_create_patient(self, ds: Dataset) -> Patient:
        patient_id = _text(ds, "PatientID")
        issuer = _text(ds, "IssuerOfPatientID")
        if patient_id is not None:
            patient = await self._get_by(Patient, patient_id=patient_id, issuer_of_patient_id=issuer)
            if patient is not None:
                return patient

        name = _text(ds, "PatientName")
        patient = Patient(
            patient_id=patient_id,
            issuer_of_patient_id=issuer,
            patient_name=name,
            patient_name_fuzzy=fuzzy_key(name),
            patient_birth_date=_text(ds, "PatientBirthDate"),
            patient_sex=_text(ds, "PatientSex"),
            attributes=encode(filter_attributes(ds, self.config.patient_attributes)),
        )
        self.session.add(patient)
        await self.session.flush()
        logger.info(f"Created patient {patient_id or '<no id>'} (pk={patient.pk})")
        return patient

    async def _get_or_create_study(self, ds: Dataset, patient: Patient) -> Study:
        study_iuid = _text(ds, "StudyInstanceUID")
        study = await self._get_by(Study, study_iuid=study_iuid)
        if study is not None:
            return study

        study = Study(
            patient_fk=patient.pk,
            study_iuid=study_iuid,
            study_id=_text(ds, "StudyID"),
            study_date=_text(ds, "StudyDate"),
            study_time=_text(ds, "StudyTime"),
            accession_number=_text(ds, "AccessionNumber"),
            study_description=_text(ds, "StudyDescription"),
            referring_physician_name=_text(ds, "ReferringPhysicianName"),
            attributes=encode(filter_attributes(ds, self.config.study_attributes)),
        )
        self.session.add(study)
        await self.session.flush()
        logger.info(f"Created study {study_iuid} (pk={study.pk})")
        return study

    async def _get_or_create_series(self, ds: Dataset, study: Study) -> Series:
        series_iuid = _text(ds, "SeriesInstanceUID")
        series = await self._get_by(Series, series_iuid=series_iuid)
        if series is not None:
            return series

        series = Series(
            study_fk=study.pk,
            series_iuid=series_iuid,
            series_number=_number(ds, "SeriesNumber"),
            modality=_text(ds, "Modality"),
            series_description=_text(ds, "SeriesDescription"),
            body_part_examined=_text(ds, "BodyPartExamined"),
            institution_name=_text(ds, "InstitutionName"),
            attributes=encode(filter_attributes(ds, self.config.series_attributes)),
        )
        self.session.add(series)
        await self.session.flush()
        return series

    async def reject(self, sop_iuid: str, code: str) -> bool:
        """Mark an instance as rejected, hiding it from queries.

        Cached aggregates are left as they are; they are corrected once they
        expire and get recomputed.

        Args:
            sop_iuid: SOP Instance UID of the instance
            code: Rejection code, e.g. ``113001^DCM`` for rejected for quality reasons

        Returns:
            True if the instance exists
        """
        instance = await self._get_by(Instance, sop_iuid=sop_iuid)
        if instance is None:
            logger.warning(f"Cannot reject unknown instance {sop_iuid}")
            return False
        instance.rejection_code = code
        self.session.add(instance)
        await self.session.commit()
        logger.info(f"Rejected instance {sop_iuid} with code {code}")
        return True

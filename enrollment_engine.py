"""
Enrollment Relationship Engine
=====================================================
Models a one-to-one student/course enrollment two ways and exercises the
trade-off between them on top of a document store:

- Referenced enrollments store only the student and course ids and are
  hydrated with a follow-up lookup (always current, one round trip per side)
- Embedded enrollments store full value copies of the student and course
  documents (zero lookups, frozen at enrollment time)

Components:
- Entity types validated at the store boundary (Student, Course)
- Relationship variants (ReferencedEnrollment | EmbeddedEnrollment)
- Resolver: hydrated view or an explicit DanglingReference
- MutationPropagator: canonical field updates, observers and snapshot drift
- Size comparator: canonical serialized size of both variants

The engine never prints; every operation returns structured values.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from document_store import ID_FIELD, DocumentStore

__all__ = [
    "EntityKind",
    "EnrollmentType",
    "Collections",
    "Student",
    "Course",
    "ReferencedEnrollment",
    "EmbeddedEnrollment",
    "Enrollment",
    "HydratedView",
    "DanglingReference",
    "NotFound",
    "FieldChange",
    "Observers",
    "StaleField",
    "SizeComparison",
    "InvalidInput",
    "EnrollmentRepository",
    "Resolver",
    "MutationPropagator",
    "make_referenced",
    "make_embedded",
    "enrollment_from_document",
    "canonical_bytes",
    "compare_sizes",
    "field_sizes",
]

logger = logging.getLogger(__name__)


class InvalidInput(ValueError):
    """Malformed input: a stored document missing or mistyping a field the
    engine reads, or operator input that cannot be parsed."""


# ──────────────────────────────────────────────────────────────────────────────
# ENUMS (str, Enum, JSON-serializable without .value)
# ──────────────────────────────────────────────────────────────────────────────

class EntityKind(str, Enum):
    STUDENT = "student"
    COURSE = "course"


class EnrollmentType(str, Enum):
    REFERENCED = "referenced"
    EMBEDDED = "embedded"


@dataclass(frozen=True)
class Collections:
    """Collection names the engine reads and writes."""
    students: str = "students"
    courses: str = "courses"
    enrollments: str = "enrollments"

    def for_kind(self, kind: EntityKind) -> str:
        return self.students if kind == EntityKind.STUDENT else self.courses

    def all(self) -> list[str]:
        return [self.students, self.courses, self.enrollments]


# ──────────────────────────────────────────────────────────────────────────────
# BOUNDARY VALIDATION
# ──────────────────────────────────────────────────────────────────────────────

def _check_type(value: Any, name: str, expected: type, where: str) -> Any:
    # bool is an int subclass; never accept it as a number
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise InvalidInput(
            f"{where}: field '{name}' must be {expected.__name__}, "
            f"got {type(value).__name__}"
        )
    return value


def _require(doc: dict[str, Any], name: str, expected: type, where: str) -> Any:
    if name not in doc:
        raise InvalidInput(f"{where}: missing required field '{name}'")
    return _check_type(doc[name], name, expected, where)


def _optional(doc: dict[str, Any], name: str, expected: type, where: str) -> Any:
    if doc.get(name) is None:
        return None
    return _check_type(doc[name], name, expected, where)


def _require_mapping(doc: Any, where: str) -> dict[str, Any]:
    if not isinstance(doc, dict):
        raise InvalidInput(f"{where}: expected a document, got {type(doc).__name__}")
    return doc


def _drop_unset(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


# ──────────────────────────────────────────────────────────────────────────────
# ENTITIES
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Student:
    """Canonical student entity.

    Only the identity fields are required; contact details are optional
    and type-checked when present.
    """
    id: str
    name: str
    student_id: str  # business key like S1001
    email: str | None = None
    age: int | None = None

    kind: ClassVar[EntityKind] = EntityKind.STUDENT

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> Student:
        doc = _require_mapping(doc, "student")
        return cls(
            id=_require(doc, ID_FIELD, str, "student"),
            name=_require(doc, "name", str, "student"),
            student_id=_require(doc, "studentId", str, "student"),
            email=_optional(doc, "email", str, "student"),
            age=_optional(doc, "age", int, "student"),
        )

    @staticmethod
    def new_document(
        name: str, student_id: str, email: str | None = None, age: int | None = None
    ) -> dict[str, Any]:
        """Field layout for a student not yet stored (no id)."""
        return _drop_unset({"name": name, "studentId": student_id, "email": email, "age": age})


@dataclass(frozen=True)
class Course:
    """Canonical course entity."""
    id: str
    name: str
    course_id: str  # business key like CS101
    credits: int | None = None
    instructor: str | None = None

    kind: ClassVar[EntityKind] = EntityKind.COURSE

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> Course:
        doc = _require_mapping(doc, "course")
        return cls(
            id=_require(doc, ID_FIELD, str, "course"),
            name=_require(doc, "name", str, "course"),
            course_id=_require(doc, "courseId", str, "course"),
            credits=_optional(doc, "credits", int, "course"),
            instructor=_optional(doc, "instructor", str, "course"),
        )

    @staticmethod
    def new_document(
        name: str, course_id: str, credits: int | None = None, instructor: str | None = None
    ) -> dict[str, Any]:
        """Field layout for a course not yet stored (no id)."""
        return _drop_unset(
            {"name": name, "courseId": course_id, "credits": credits, "instructor": instructor}
        )


ENTITY_TYPES: dict[EntityKind, type] = {
    EntityKind.STUDENT: Student,
    EntityKind.COURSE: Course,
}


# ──────────────────────────────────────────────────────────────────────────────
# RELATIONSHIP VARIANTS
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReferencedEnrollment:
    """Enrollment holding only foreign ids. Referents may no longer exist."""
    student_ref: str
    course_ref: str
    grade: str
    date: str
    id: str | None = None

    enrollment_type: ClassVar[EnrollmentType] = EnrollmentType.REFERENCED

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "enrollmentType": self.enrollment_type.value,
            "date": self.date,
            "studentRef": self.student_ref,
            "courseRef": self.course_ref,
            "grade": self.grade,
        }
        if self.id is not None:
            doc[ID_FIELD] = self.id
        return doc


@dataclass(frozen=True)
class EmbeddedEnrollment:
    """Enrollment holding value copies of the student and course documents
    as they were at creation time. The copies are never refreshed."""
    student: dict[str, Any]
    course: dict[str, Any]
    grade: str
    date: str
    id: str | None = None

    enrollment_type: ClassVar[EnrollmentType] = EnrollmentType.EMBEDDED

    def __post_init__(self):
        # Validates the snapshot shape; the raw copy is what gets stored
        Student.from_document(self.student)
        Course.from_document(self.course)

    @property
    def student_snapshot(self) -> Student:
        return Student.from_document(self.student)

    @property
    def course_snapshot(self) -> Course:
        return Course.from_document(self.course)

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "enrollmentType": self.enrollment_type.value,
            "date": self.date,
            "student": copy.deepcopy(self.student),
            "course": copy.deepcopy(self.course),
            "grade": self.grade,
        }
        if self.id is not None:
            doc[ID_FIELD] = self.id
        return doc


Enrollment = Union[ReferencedEnrollment, EmbeddedEnrollment]


def make_referenced(student_id: str, course_id: str, grade: str, date: str) -> ReferencedEnrollment:
    """Referenced enrollment from the store ids of a student and a course."""
    if not student_id or not course_id:
        raise InvalidInput("referenced enrollment needs both a student id and a course id")
    return ReferencedEnrollment(student_ref=student_id, course_ref=course_id, grade=grade, date=date)


def make_embedded(
    student_doc: dict[str, Any],
    course_doc: dict[str, Any],
    grade: str,
    date: str,
) -> EmbeddedEnrollment:
    """Embedded enrollment holding deep, independent snapshots of both documents.

    Mutating ``student_doc`` or ``course_doc`` afterwards leaves the
    enrollment untouched.
    """
    return EmbeddedEnrollment(
        student=copy.deepcopy(student_doc),
        course=copy.deepcopy(course_doc),
        grade=grade,
        date=date,
    )


def enrollment_from_document(doc: dict[str, Any]) -> Enrollment:
    """Decode a stored enrollment, checking the payload matches its type.

    The payload of the other variant must be absent, not null-filled.
    """
    doc = _require_mapping(doc, "enrollment")
    raw_type = _require(doc, "enrollmentType", str, "enrollment")
    try:
        kind = EnrollmentType(raw_type)
    except ValueError:
        raise InvalidInput(f"enrollment: unknown enrollmentType {raw_type!r}") from None

    doc_id = doc.get(ID_FIELD)
    grade = _require(doc, "grade", str, "enrollment")
    date = _require(doc, "date", str, "enrollment")

    if kind == EnrollmentType.REFERENCED:
        stray = [k for k in ("student", "course") if k in doc]
        if stray:
            raise InvalidInput(f"referenced enrollment carries embedded fields: {stray}")
        return ReferencedEnrollment(
            student_ref=_require(doc, "studentRef", str, "referenced enrollment"),
            course_ref=_require(doc, "courseRef", str, "referenced enrollment"),
            grade=grade,
            date=date,
            id=doc_id,
        )

    stray = [k for k in ("studentRef", "courseRef") if k in doc]
    if stray:
        raise InvalidInput(f"embedded enrollment carries reference fields: {stray}")
    return EmbeddedEnrollment(
        student=_require(doc, "student", dict, "embedded enrollment"),
        course=_require(doc, "course", dict, "embedded enrollment"),
        grade=grade,
        date=date,
        id=doc_id,
    )


# ──────────────────────────────────────────────────────────────────────────────
# RESULT TYPES
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HydratedView:
    """Display-ready enrollment, whichever variant produced it."""
    enrollment_id: str | None
    enrollment_type: EnrollmentType
    student_name: str
    student_business_id: str
    course_name: str
    course_business_id: str
    grade: str
    date: str
    store_lookups: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DanglingReference:
    """A referenced enrollment whose student and/or course id no longer resolves."""
    enrollment_id: str | None
    student_ref: str
    course_ref: str
    missing_student: bool
    missing_course: bool

    @property
    def missing(self) -> list[str]:
        sides = []
        if self.missing_student:
            sides.append(EntityKind.STUDENT.value)
        if self.missing_course:
            sides.append(EntityKind.COURSE.value)
        return sides


@dataclass(frozen=True)
class NotFound:
    """No canonical entity has this id."""
    collection: str
    id: str


@dataclass(frozen=True)
class FieldChange:
    """A field update applied to exactly one canonical entity."""
    kind: EntityKind
    collection: str
    id: str
    field: str
    old_value: Any
    new_value: Any


@dataclass(frozen=True)
class Observers:
    """Which stored enrollments see a canonical change.

    ``live`` resolve to the new value on their next resolve; ``frozen``
    keep the value captured when they were created.
    """
    live: list[str] = field(default_factory=list)
    frozen: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StaleField:
    """An embedded snapshot field that no longer matches the canonical entity."""
    side: EntityKind
    entity_id: str
    field: str
    snapshot_value: Any
    canonical_value: Any = None
    canonical_missing: bool = False


@dataclass(frozen=True)
class SizeComparison:
    """Canonical serialized sizes of a referenced and an embedded enrollment."""
    referenced_bytes: int
    embedded_bytes: int
    ratio: float | None
    duplicated_fields: int = 0

    @property
    def available(self) -> bool:
        return self.ratio is not None

    @property
    def delta_bytes(self) -> int:
        return self.embedded_bytes - self.referenced_bytes

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["available"] = self.available
        data["delta_bytes"] = self.delta_bytes
        return data


# ──────────────────────────────────────────────────────────────────────────────
# REPOSITORY
# ──────────────────────────────────────────────────────────────────────────────

class EnrollmentRepository:
    """Stores and reads enrollments. Stored enrollments are never rewritten."""

    def __init__(self, store: DocumentStore, collections: Collections | None = None):
        self.store = store
        self.collections = collections or Collections()

    def save(self, enrollment: Enrollment) -> Enrollment:
        if enrollment.id is not None:
            raise InvalidInput(f"enrollment {enrollment.id} is already stored")
        doc_id = self.store.create(self.collections.enrollments, enrollment.to_document())
        logger.info("Stored %s enrollment %s", enrollment.enrollment_type.value, doc_id)
        return enrollment_from_document({**enrollment.to_document(), ID_FIELD: doc_id})

    def get(self, enrollment_id: str) -> Enrollment | None:
        doc = self.store.find_by_id(self.collections.enrollments, enrollment_id)
        return enrollment_from_document(doc) if doc is not None else None

    def first(self, kind: EnrollmentType) -> Enrollment | None:
        doc = self.store.find_one(self.collections.enrollments, {"enrollmentType": kind.value})
        return enrollment_from_document(doc) if doc is not None else None

    def all(self, kind: EnrollmentType | None = None) -> list[Enrollment]:
        where = {"enrollmentType": kind.value} if kind is not None else None
        return [enrollment_from_document(d) for d in self.store.find(self.collections.enrollments, where)]


# ──────────────────────────────────────────────────────────────────────────────
# RESOLVER
# ──────────────────────────────────────────────────────────────────────────────

class Resolver:
    """Builds a fresh hydrated view on every call; never writes.

    Referenced enrollments cost one store lookup per side and reflect the
    current canonical entities. Embedded enrollments cost none and reflect
    the entities as they were at enrollment time.
    """

    def __init__(self, store: DocumentStore, collections: Collections | None = None):
        self.store = store
        self.collections = collections or Collections()

    def resolve(self, enrollment: Enrollment) -> HydratedView | DanglingReference:
        if isinstance(enrollment, ReferencedEnrollment):
            return self._resolve_referenced(enrollment)
        if isinstance(enrollment, EmbeddedEnrollment):
            return self._resolve_embedded(enrollment)
        raise TypeError(f"unsupported enrollment variant: {type(enrollment).__name__}")

    def _resolve_referenced(self, enrollment: ReferencedEnrollment) -> HydratedView | DanglingReference:
        student_doc = self.store.find_by_id(self.collections.students, enrollment.student_ref)
        course_doc = self.store.find_by_id(self.collections.courses, enrollment.course_ref)

        if student_doc is None or course_doc is None:
            dangling = DanglingReference(
                enrollment_id=enrollment.id,
                student_ref=enrollment.student_ref,
                course_ref=enrollment.course_ref,
                missing_student=student_doc is None,
                missing_course=course_doc is None,
            )
            logger.warning(
                "Enrollment %s has dangling reference(s): %s",
                enrollment.id, ", ".join(dangling.missing),
            )
            return dangling

        student = Student.from_document(student_doc)
        course = Course.from_document(course_doc)
        return HydratedView(
            enrollment_id=enrollment.id,
            enrollment_type=enrollment.enrollment_type,
            student_name=student.name,
            student_business_id=student.student_id,
            course_name=course.name,
            course_business_id=course.course_id,
            grade=enrollment.grade,
            date=enrollment.date,
            store_lookups=2,
        )

    def _resolve_embedded(self, enrollment: EmbeddedEnrollment) -> HydratedView:
        student = enrollment.student_snapshot
        course = enrollment.course_snapshot
        return HydratedView(
            enrollment_id=enrollment.id,
            enrollment_type=enrollment.enrollment_type,
            student_name=student.name,
            student_business_id=student.student_id,
            course_name=course.name,
            course_business_id=course.course_id,
            grade=enrollment.grade,
            date=enrollment.date,
            store_lookups=0,
        )


# ──────────────────────────────────────────────────────────────────────────────
# MUTATION PROPAGATOR
# ──────────────────────────────────────────────────────────────────────────────

class MutationPropagator:
    """Applies field updates to canonical entities.

    Referenced enrollments pointing at the entity observe the change on
    their next resolve. Embedded copies keep the value captured at their
    own creation time: there is no cascade and no invalidation.
    """

    def __init__(self, store: DocumentStore, collections: Collections | None = None):
        self.store = store
        self.collections = collections or Collections()
        self.enrollments = EnrollmentRepository(store, self.collections)

    def update_entity_field(
        self,
        kind: EntityKind,
        entity_id: str,
        field_name: str,
        new_value: Any,
    ) -> FieldChange | NotFound:
        collection = self.collections.for_kind(kind)
        if field_name == ID_FIELD:
            raise InvalidInput(f"'{ID_FIELD}' is immutable once assigned")

        current = self.store.find_by_id(collection, entity_id)
        if current is None:
            return NotFound(collection, entity_id)

        # The updated entity must still decode
        ENTITY_TYPES[kind].from_document({**current, field_name: new_value})

        if not self.store.update(collection, entity_id, {field_name: new_value}):
            return NotFound(collection, entity_id)

        change = FieldChange(
            kind=kind,
            collection=collection,
            id=entity_id,
            field=field_name,
            old_value=current.get(field_name),
            new_value=new_value,
        )
        logger.info(
            "Updated %s %s.%s: %r -> %r",
            kind.value, entity_id, field_name, change.old_value, new_value,
        )
        return change

    def observers(self, change: FieldChange) -> Observers:
        """Split stored enrollments involving the changed entity by whether
        they see the change."""
        live: list[str] = []
        frozen: list[str] = []
        for enrollment in self.enrollments.all():
            if isinstance(enrollment, ReferencedEnrollment):
                ref = enrollment.student_ref if change.kind == EntityKind.STUDENT else enrollment.course_ref
                if ref == change.id:
                    live.append(enrollment.id)
            elif isinstance(enrollment, EmbeddedEnrollment):
                snapshot = enrollment.student if change.kind == EntityKind.STUDENT else enrollment.course
                if snapshot.get(ID_FIELD) == change.id:
                    frozen.append(enrollment.id)
        return Observers(live=live, frozen=frozen)

    def drift(self, enrollment: Enrollment) -> list[StaleField]:
        """Fields where an embedded snapshot differs from the canonical entity.

        Referenced enrollments never drift.
        """
        if not isinstance(enrollment, EmbeddedEnrollment):
            return []
        stale: list[StaleField] = []
        for kind, snapshot in (
            (EntityKind.STUDENT, enrollment.student),
            (EntityKind.COURSE, enrollment.course),
        ):
            entity_id = snapshot[ID_FIELD]
            canonical = self.store.find_by_id(self.collections.for_kind(kind), entity_id)
            if canonical is None:
                stale.append(StaleField(
                    side=kind, entity_id=entity_id, field=ID_FIELD,
                    snapshot_value=entity_id, canonical_missing=True,
                ))
                continue
            for name in sorted(set(snapshot) | set(canonical)):
                if snapshot.get(name) != canonical.get(name):
                    stale.append(StaleField(
                        side=kind, entity_id=entity_id, field=name,
                        snapshot_value=snapshot.get(name),
                        canonical_value=canonical.get(name),
                    ))
        return stale


# ──────────────────────────────────────────────────────────────────────────────
# SIZE COMPARATOR (pure functions)
# ──────────────────────────────────────────────────────────────────────────────

def canonical_bytes(enrollment: Enrollment) -> bytes:
    """Canonical serialized form: compact JSON, sorted keys, UTF-8."""
    return json.dumps(
        enrollment.to_document(),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def compare_sizes(referenced: ReferencedEnrollment, embedded: EmbeddedEnrollment) -> SizeComparison:
    """Serialized size of both variants. Read-only and idempotent.

    ``ratio`` is embedded/referenced, reported only when both sizes are
    positive; otherwise it is None and the comparison is unavailable.
    """
    if not isinstance(referenced, ReferencedEnrollment) or not isinstance(embedded, EmbeddedEnrollment):
        raise TypeError("compare_sizes expects (ReferencedEnrollment, EmbeddedEnrollment)")
    ref_size = len(canonical_bytes(referenced))
    emb_size = len(canonical_bytes(embedded))
    ratio = emb_size / ref_size if ref_size > 0 and emb_size > 0 else None
    duplicated = sum(
        1 for snapshot in (embedded.student, embedded.course)
        for name in snapshot if name != ID_FIELD
    )
    return SizeComparison(
        referenced_bytes=ref_size,
        embedded_bytes=emb_size,
        ratio=ratio,
        duplicated_fields=duplicated,
    )


def field_sizes(enrollment: Enrollment) -> dict[str, int]:
    """Canonical serialized bytes contributed by each top-level field."""
    doc = enrollment.to_document()
    return {
        name: len(json.dumps(
            {name: value}, sort_keys=True, separators=(",", ":"),
            ensure_ascii=False, default=str,
        ).encode("utf-8"))
        for name, value in doc.items()
    }

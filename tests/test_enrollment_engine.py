"""Tests for the enrollment relationship engine.

Covers boundary validation, both relationship variants, resolve asymmetry,
mutation propagation, snapshot drift, and size comparison.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from document_store import MemoryStore, SupabaseStore
from enrollment_engine import (
    Collections,
    Course,
    DanglingReference,
    EmbeddedEnrollment,
    EnrollmentRepository,
    EnrollmentType,
    EntityKind,
    FieldChange,
    HydratedView,
    InvalidInput,
    MutationPropagator,
    NotFound,
    ReferencedEnrollment,
    Resolver,
    SizeComparison,
    Student,
    canonical_bytes,
    compare_sizes,
    enrollment_from_document,
    field_sizes,
    make_embedded,
    make_referenced,
)

DATE = "2025-09-01T10:00:00"


class CountingStore(MemoryStore):
    """MemoryStore that counts read round trips."""

    def __init__(self):
        super().__init__()
        self.finds = 0

    def find(self, *args, **kwargs):
        self.finds += 1
        return super().find(*args, **kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def ids(store) -> dict[str, str]:
    """Business key -> store id for the two-student, two-course scenario."""
    out = {}
    for name, sid, email, age in [
        ("John Smith", "S1001", "john.smith@example.com", 20),
        ("Emily Johnson", "S1002", "emily.johnson@example.com", 21),
    ]:
        out[sid] = store.create("students", Student.new_document(name, sid, email, age))
    for name, cid, credits, instructor in [
        ("Intro to Programming", "CS101", 3, "Prof. Anderson"),
        ("Databases", "CS202", 4, "Prof. Martinez"),
    ]:
        out[cid] = store.create("courses", Course.new_document(name, cid, credits, instructor))
    return out


@pytest.fixture
def repo(store) -> EnrollmentRepository:
    return EnrollmentRepository(store)


@pytest.fixture
def resolver(store) -> Resolver:
    return Resolver(store)


@pytest.fixture
def propagator(store) -> MutationPropagator:
    return MutationPropagator(store)


@pytest.fixture
def referenced(repo, ids) -> ReferencedEnrollment:
    return repo.save(make_referenced(ids["S1001"], ids["CS101"], "A", DATE))


@pytest.fixture
def embedded(repo, store, ids) -> EmbeddedEnrollment:
    student_doc = store.find_by_id("students", ids["S1002"])
    course_doc = store.find_by_id("courses", ids["CS202"])
    return repo.save(make_embedded(student_doc, course_doc, "B+", DATE))


# ---------------------------------------------------------------------------
# Entity validation
# ---------------------------------------------------------------------------

class TestEntityValidation:
    def test_student_from_document(self):
        s = Student.from_document({
            "id": "x", "name": "Ann", "studentId": "S1",
            "email": "ann@example.com", "age": 19,
        })
        assert s.student_id == "S1"
        assert s.age == 19

    def test_extra_fields_ignored(self):
        c = Course.from_document({
            "id": "c", "name": "Algebra", "courseId": "M1", "credits": 3,
            "instructor": "Dr. X", "room": "B12",
        })
        assert c.course_id == "M1"

    def test_missing_field_raises(self):
        with pytest.raises(InvalidInput, match="studentId"):
            Student.from_document({"id": "x", "name": "Ann", "email": "a@b", "age": 1})

    def test_mistyped_field_raises(self):
        with pytest.raises(InvalidInput, match="age"):
            Student.from_document({
                "id": "x", "name": "Ann", "studentId": "S1", "email": "a@b", "age": "19",
            })

    def test_bool_is_not_an_int(self):
        with pytest.raises(InvalidInput, match="credits"):
            Course.from_document({
                "id": "c", "name": "X", "courseId": "C", "credits": True, "instructor": "Y",
            })

    def test_non_mapping_raises(self):
        with pytest.raises(InvalidInput):
            Student.from_document(["not", "a", "doc"])

    def test_new_document_has_no_id(self):
        assert "id" not in Student.new_document("Ann", "S1", "a@b", 19)
        assert Course.new_document("X", "C1", 3, "Y") == {
            "name": "X", "courseId": "C1", "credits": 3, "instructor": "Y",
        }

    def test_identity_fields_are_enough(self):
        s = Student.from_document({"id": "x", "name": "Ann", "studentId": "S1"})
        c = Course.from_document({"id": "c", "name": "Algebra", "courseId": "M1"})
        assert s.email is None and s.age is None
        assert c.credits is None and c.instructor is None

    def test_optional_field_checked_when_present(self):
        with pytest.raises(InvalidInput, match="age"):
            Student.from_document({"id": "x", "name": "Ann", "studentId": "S1", "age": "19"})

    def test_new_document_omits_unset_fields(self):
        assert Student.new_document("Ann", "S1") == {"name": "Ann", "studentId": "S1"}


class TestCollections:
    def test_for_kind(self):
        cols = Collections(students="s", courses="c", enrollments="e")
        assert cols.for_kind(EntityKind.STUDENT) == "s"
        assert cols.for_kind(EntityKind.COURSE) == "c"
        assert cols.all() == ["s", "c", "e"]


# ---------------------------------------------------------------------------
# Relationship variants
# ---------------------------------------------------------------------------

class TestMakeReferenced:
    def test_holds_ids_only(self):
        e = make_referenced("sid", "cid", "A", DATE)
        doc = e.to_document()
        assert doc == {
            "enrollmentType": "referenced", "date": DATE,
            "studentRef": "sid", "courseRef": "cid", "grade": "A",
        }

    def test_embedded_fields_absent(self):
        doc = make_referenced("sid", "cid", "A", DATE).to_document()
        assert "student" not in doc
        assert "course" not in doc

    def test_empty_id_rejected(self):
        with pytest.raises(InvalidInput):
            make_referenced("", "cid", "A", DATE)


class TestMakeEmbedded:
    def test_snapshot_is_independent_of_source(self, store, ids):
        student_doc = store.find_by_id("students", ids["S1001"])
        student_doc["tags"] = ["honors"]
        course_doc = store.find_by_id("courses", ids["CS101"])

        e = make_embedded(student_doc, course_doc, "A", DATE)
        student_doc["name"] = "Changed"
        student_doc["tags"].append("probation")
        course_doc["credits"] = 99

        assert e.student["name"] == "John Smith"
        assert e.student["tags"] == ["honors"]
        assert e.course["credits"] == 3

    def test_reference_fields_absent(self, store, ids):
        e = make_embedded(
            store.find_by_id("students", ids["S1001"]),
            store.find_by_id("courses", ids["CS101"]),
            "A", DATE,
        )
        doc = e.to_document()
        assert doc["enrollmentType"] == "embedded"
        assert "studentRef" not in doc
        assert "courseRef" not in doc

    def test_to_document_returns_copies(self, embedded):
        doc = embedded.to_document()
        doc["student"]["name"] = "Mutated"
        assert embedded.student["name"] == "Emily Johnson"

    def test_malformed_snapshot_rejected(self):
        with pytest.raises(InvalidInput):
            make_embedded({"name": "no id"}, {"name": "no id"}, "A", DATE)


class TestEnrollmentFromDocument:
    def test_referenced_round_trip(self, referenced):
        assert enrollment_from_document(referenced.to_document()) == referenced

    def test_embedded_decodes(self, embedded):
        decoded = enrollment_from_document(embedded.to_document())
        assert isinstance(decoded, EmbeddedEnrollment)
        assert decoded.student == embedded.student

    def test_unknown_type(self):
        with pytest.raises(InvalidInput, match="enrollmentType"):
            enrollment_from_document({"enrollmentType": "linked", "grade": "A", "date": DATE})

    def test_missing_grade(self):
        with pytest.raises(InvalidInput, match="grade"):
            enrollment_from_document({
                "enrollmentType": "referenced", "date": DATE,
                "studentRef": "s", "courseRef": "c",
            })

    def test_referenced_with_embedded_payload_rejected(self, embedded):
        doc = make_referenced("s", "c", "A", DATE).to_document()
        doc["student"] = embedded.student
        with pytest.raises(InvalidInput, match="embedded fields"):
            enrollment_from_document(doc)

    def test_embedded_with_reference_payload_rejected(self, embedded):
        doc = embedded.to_document()
        doc["studentRef"] = "s"
        with pytest.raises(InvalidInput, match="reference fields"):
            enrollment_from_document(doc)

    def test_embedded_payload_must_be_document(self):
        with pytest.raises(InvalidInput):
            enrollment_from_document({
                "enrollmentType": "embedded", "date": DATE, "grade": "A",
                "student": "s", "course": "c",
            })


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class TestEnrollmentRepository:
    def test_save_assigns_id(self, referenced):
        assert referenced.id is not None

    def test_save_twice_rejected(self, repo, referenced):
        with pytest.raises(InvalidInput, match="already stored"):
            repo.save(referenced)

    def test_get(self, repo, referenced):
        assert repo.get(referenced.id) == referenced

    def test_get_missing(self, repo):
        assert repo.get("nope") is None

    def test_first_by_kind(self, repo, referenced, embedded):
        assert repo.first(EnrollmentType.REFERENCED) == referenced
        assert repo.first(EnrollmentType.EMBEDDED).id == embedded.id

    def test_first_empty(self, repo):
        assert repo.first(EnrollmentType.EMBEDDED) is None

    def test_all(self, repo, referenced, embedded):
        assert len(repo.all()) == 2
        assert [e.id for e in repo.all(EnrollmentType.REFERENCED)] == [referenced.id]

    def test_custom_collection(self, store, ids):
        repo = EnrollmentRepository(store, Collections(enrollments="enrollments_v2"))
        saved = repo.save(make_referenced(ids["S1001"], ids["CS101"], "A", DATE))
        assert store.count("enrollments_v2") == 1
        assert store.count("enrollments") == 0
        assert repo.get(saved.id) == saved


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class TestResolver:
    def test_referenced_hydrates_from_store(self, resolver, referenced):
        view = resolver.resolve(referenced)
        assert isinstance(view, HydratedView)
        assert view.student_name == "John Smith"
        assert view.student_business_id == "S1001"
        assert view.course_name == "Intro to Programming"
        assert view.course_business_id == "CS101"
        assert view.grade == "A"
        assert view.date == DATE
        assert view.enrollment_type == EnrollmentType.REFERENCED

    def test_referenced_costs_two_lookups(self, store, resolver, referenced):
        before = store.finds
        view = resolver.resolve(referenced)
        assert store.finds - before == 2
        assert view.store_lookups == 2

    def test_embedded_reads_payload_without_store(self, store, resolver, embedded):
        before = store.finds
        view = resolver.resolve(embedded)
        assert store.finds == before
        assert view.store_lookups == 0
        assert view.student_name == "Emily Johnson"
        assert view.course_business_id == "CS202"
        assert view.grade == "B+"

    def test_idempotent_resolve(self, resolver, referenced, embedded):
        assert resolver.resolve(referenced) == resolver.resolve(referenced)
        assert resolver.resolve(embedded) == resolver.resolve(embedded)

    def test_dangling_student(self, store, resolver, referenced, ids):
        store.delete("students", ids["S1001"])
        result = resolver.resolve(referenced)
        assert isinstance(result, DanglingReference)
        assert result.missing == ["student"]
        assert result.enrollment_id == referenced.id

    def test_dangling_course(self, store, resolver, referenced, ids):
        store.delete("courses", ids["CS101"])
        result = resolver.resolve(referenced)
        assert isinstance(result, DanglingReference)
        assert result.missing == ["course"]

    def test_dangling_both(self, store, resolver, referenced, ids):
        store.delete("students", ids["S1001"])
        store.delete("courses", ids["CS101"])
        assert resolver.resolve(referenced).missing == ["student", "course"]

    def test_embedded_unaffected_by_deletion(self, store, resolver, embedded, ids):
        store.delete("students", ids["S1002"])
        view = resolver.resolve(embedded)
        assert isinstance(view, HydratedView)
        assert view.student_name == "Emily Johnson"

    def test_malformed_canonical_raises(self, store, resolver, referenced, ids):
        store.update("students", ids["S1001"], {"age": "twenty"})
        with pytest.raises(InvalidInput, match="age"):
            resolver.resolve(referenced)

    def test_unknown_variant(self, resolver):
        with pytest.raises(TypeError):
            resolver.resolve({"enrollmentType": "referenced"})

    def test_view_to_dict(self, resolver, embedded):
        d = resolver.resolve(embedded).to_dict()
        assert d["student_name"] == "Emily Johnson"
        assert d["enrollment_type"] == "embedded"


# ---------------------------------------------------------------------------
# Mutation propagation
# ---------------------------------------------------------------------------

class TestMutationPropagator:
    def test_update_returns_old_value(self, store, propagator, ids):
        change = propagator.update_entity_field(
            EntityKind.STUDENT, ids["S1001"], "name", "John Smith-Updated",
        )
        assert isinstance(change, FieldChange)
        assert change.old_value == "John Smith"
        assert change.new_value == "John Smith-Updated"
        assert change.collection == "students"
        assert store.find_by_id("students", ids["S1001"])["name"] == "John Smith-Updated"

    def test_update_touches_one_entity(self, store, propagator, ids):
        propagator.update_entity_field(EntityKind.STUDENT, ids["S1001"], "name", "X")
        assert store.find_by_id("students", ids["S1002"])["name"] == "Emily Johnson"

    def test_course_update(self, store, propagator, ids):
        change = propagator.update_entity_field(EntityKind.COURSE, ids["CS101"], "credits", 4)
        assert change.old_value == 3
        assert store.find_by_id("courses", ids["CS101"])["credits"] == 4

    def test_not_found(self, propagator):
        result = propagator.update_entity_field(EntityKind.STUDENT, "missing", "name", "X")
        assert result == NotFound("students", "missing")

    def test_id_is_immutable(self, propagator, ids):
        with pytest.raises(InvalidInput, match="immutable"):
            propagator.update_entity_field(EntityKind.STUDENT, ids["S1001"], "id", "other")

    def test_invalid_value_not_written(self, store, propagator, ids):
        with pytest.raises(InvalidInput, match="age"):
            propagator.update_entity_field(EntityKind.STUDENT, ids["S1001"], "age", "old")
        assert store.find_by_id("students", ids["S1001"])["age"] == 20

    def test_new_field_has_no_old_value(self, propagator, ids):
        change = propagator.update_entity_field(EntityKind.STUDENT, ids["S1001"], "phone", "555")
        assert change.old_value is None

    def test_embedding_is_a_snapshot(self, resolver, propagator, embedded, ids):
        propagator.update_entity_field(EntityKind.STUDENT, ids["S1002"], "name", "Emily Johnson-Updated")
        assert resolver.resolve(embedded).student_name == "Emily Johnson"

    def test_referencing_is_live(self, resolver, propagator, referenced, ids):
        propagator.update_entity_field(EntityKind.STUDENT, ids["S1001"], "name", "John Smith-Updated")
        assert resolver.resolve(referenced).student_name == "John Smith-Updated"

    def test_stored_embedded_copy_unchanged(self, repo, propagator, embedded, ids):
        propagator.update_entity_field(EntityKind.COURSE, ids["CS202"], "name", "Advanced Databases")
        assert repo.get(embedded.id).course["name"] == "Databases"

    def test_observers(self, store, repo, propagator, referenced, embedded, ids):
        # Second referenced enrollment on the embedded student
        other = repo.save(make_referenced(ids["S1002"], ids["CS101"], "C", DATE))
        change = propagator.update_entity_field(EntityKind.STUDENT, ids["S1002"], "name", "E")
        observers = propagator.observers(change)
        assert observers.live == [other.id]
        assert observers.frozen == [embedded.id]

    def test_observers_for_course(self, propagator, referenced, embedded, ids):
        change = propagator.update_entity_field(EntityKind.COURSE, ids["CS101"], "name", "Intro")
        observers = propagator.observers(change)
        assert observers.live == [referenced.id]
        assert observers.frozen == []

    def test_no_drift_before_mutation(self, propagator, embedded):
        assert propagator.drift(embedded) == []

    def test_drift_after_mutation(self, propagator, embedded, ids):
        propagator.update_entity_field(EntityKind.STUDENT, ids["S1002"], "name", "Emily J")
        stale = propagator.drift(embedded)
        assert len(stale) == 1
        assert stale[0].side == EntityKind.STUDENT
        assert stale[0].field == "name"
        assert stale[0].snapshot_value == "Emily Johnson"
        assert stale[0].canonical_value == "Emily J"

    def test_drift_when_canonical_deleted(self, store, propagator, embedded, ids):
        store.delete("courses", ids["CS202"])
        stale = propagator.drift(embedded)
        assert len(stale) == 1
        assert stale[0].side == EntityKind.COURSE
        assert stale[0].canonical_missing is True

    def test_referenced_never_drifts(self, propagator, referenced, ids):
        propagator.update_entity_field(EntityKind.STUDENT, ids["S1001"], "name", "Z")
        assert propagator.drift(referenced) == []


# ---------------------------------------------------------------------------
# Size comparison
# ---------------------------------------------------------------------------

class TestCompareSizes:
    def test_embedded_is_larger(self, referenced, embedded):
        c = compare_sizes(referenced, embedded)
        assert c.embedded_bytes > c.referenced_bytes
        assert c.ratio > 1
        assert c.available is True
        assert c.delta_bytes == c.embedded_bytes - c.referenced_bytes

    def test_sizes_match_canonical_form(self, referenced, embedded):
        c = compare_sizes(referenced, embedded)
        assert c.referenced_bytes == len(canonical_bytes(referenced))
        assert c.ratio == pytest.approx(c.embedded_bytes / c.referenced_bytes)

    def test_duplicated_fields(self, referenced, embedded):
        # 4 student fields + 4 course fields, ids excluded
        assert compare_sizes(referenced, embedded).duplicated_fields == 8

    def test_idempotent(self, referenced, embedded):
        assert compare_sizes(referenced, embedded) == compare_sizes(referenced, embedded)

    def test_canonical_form_is_key_order_independent(self):
        a = make_referenced("s", "c", "A", DATE)
        assert canonical_bytes(a) == canonical_bytes(enrollment_from_document(
            dict(reversed(list(a.to_document().items())))
        ))

    def test_counts_utf8_bytes(self, referenced):
        accented = ReferencedEnrollment(
            student_ref=referenced.student_ref, course_ref=referenced.course_ref,
            grade="é", date=DATE,
        )
        plain = ReferencedEnrollment(
            student_ref=referenced.student_ref, course_ref=referenced.course_ref,
            grade="e", date=DATE,
        )
        assert len(canonical_bytes(accented)) == len(canonical_bytes(plain)) + 1

    def test_wrong_argument_order(self, referenced, embedded):
        with pytest.raises(TypeError):
            compare_sizes(embedded, referenced)

    def test_unavailable(self):
        c = SizeComparison(referenced_bytes=0, embedded_bytes=120, ratio=None)
        assert c.available is False
        assert c.to_dict()["available"] is False

    def test_no_writes(self, store, referenced, embedded):
        before = store.count("enrollments")
        compare_sizes(referenced, embedded)
        assert store.count("enrollments") == before

    def test_field_sizes(self, referenced, embedded):
        ref = field_sizes(referenced)
        emb = field_sizes(embedded)
        assert set(ref) == {"enrollmentType", "date", "studentRef", "courseRef", "grade", "id"}
        assert emb["student"] > ref["studentRef"]


# ---------------------------------------------------------------------------
# End-to-end scenario
# ---------------------------------------------------------------------------

class TestScenario:
    def test_reference_vs_embedding_divergence(self, store, ids):
        repo = EnrollmentRepository(store)
        resolver = Resolver(store)
        propagator = MutationPropagator(store)

        ref = repo.save(make_referenced(ids["S1001"], ids["CS101"], "A", DATE))
        emb = repo.save(make_embedded(
            store.find_by_id("students", ids["S1002"]),
            store.find_by_id("courses", ids["CS202"]),
            "B+", DATE,
        ))

        propagator.update_entity_field(EntityKind.STUDENT, ids["S1001"], "name", "John Smith-Updated")
        assert resolver.resolve(repo.get(ref.id)).student_name == "John Smith-Updated"

        propagator.update_entity_field(EntityKind.STUDENT, ids["S1002"], "name", "Emily Johnson-Updated")
        assert resolver.resolve(repo.get(emb.id)).student_name == "Emily Johnson"

        comparison = compare_sizes(repo.get(ref.id), repo.get(emb.id))
        assert comparison.embedded_bytes > comparison.referenced_bytes

    def test_divergence_with_identity_only_documents(self, store):
        sids = {
            key: store.create("students", {"name": name, "studentId": key})
            for key, name in [("S1001", "John Smith"), ("S1002", "Emily Johnson")]
        }
        cids = {
            key: store.create("courses", {"name": name, "courseId": key})
            for key, name in [("CS101", "Intro to Programming"), ("CS202", "Databases")]
        }
        repo = EnrollmentRepository(store)
        resolver = Resolver(store)
        propagator = MutationPropagator(store)

        ref = repo.save(make_referenced(sids["S1001"], cids["CS101"], "A", DATE))
        emb = repo.save(make_embedded(
            store.find_by_id("students", sids["S1002"]),
            store.find_by_id("courses", cids["CS202"]),
            "B+", DATE,
        ))

        assert resolver.resolve(repo.get(ref.id)).student_name == "John Smith"
        propagator.update_entity_field(EntityKind.STUDENT, sids["S1001"], "name", "John Smith-Updated")
        propagator.update_entity_field(EntityKind.STUDENT, sids["S1002"], "name", "Emily Johnson-Updated")

        assert resolver.resolve(repo.get(ref.id)).student_name == "John Smith-Updated"
        assert resolver.resolve(repo.get(emb.id)).student_name == "Emily Johnson"
        assert compare_sizes(repo.get(ref.id), repo.get(emb.id)).embedded_bytes > 0


class TestSupabaseBackedEngine:
    """Opaque refs that are not uuids behave as missing, not as errors."""

    @pytest.fixture
    def sb(self):
        client = MagicMock()
        return SupabaseStore(client), client.schema.return_value.table.return_value

    def test_non_uuid_refs_dangle(self, sb):
        store, table = sb
        result = Resolver(store).resolve(make_referenced("S1001", "CS101", "A", DATE))
        assert isinstance(result, DanglingReference)
        assert result.missing == ["student", "course"]
        table.select.assert_not_called()

    def test_update_non_uuid_is_not_found(self, sb):
        store, table = sb
        result = MutationPropagator(store).update_entity_field(
            EntityKind.STUDENT, "S1001", "name", "X",
        )
        assert result == NotFound("students", "S1001")
        table.update.assert_not_called()

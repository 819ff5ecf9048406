#!/usr/bin/env python3
"""
Student Enrollment Relationship Demo
=====================================================
Menu-driven walkthrough of embedded vs. referenced one-to-one relationships
in a document store:

1. Clear all collections
2. Insert sample students and courses
3. Create enrollments (one referenced, one embedded)
4. Query enrollments, show document structures and size comparison
5. Update student names (live references vs. frozen snapshots)
6. Render size comparison charts
7. Run 1-5 in sequence

Usage:
    python enrollment_demo.py
    python enrollment_demo.py --run-all
    python enrollment_demo.py --config enrollment.properties
    python enrollment_demo.py --url https://your-project.supabase.co --key your-service-role-key

    # Or use environment variables:
    export ENROLLMENT_STORE_URL=https://your-project.supabase.co
    export SUPABASE_KEY=your-service-role-key
    python enrollment_demo.py --run-all
"""

from __future__ import annotations

import argparse
import configparser
import json
import logging
import os
import sys
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from document_store import DocumentStore, StoreError, StoreUnavailable, open_store
from enrollment_engine import (
    Collections,
    Course,
    DanglingReference,
    EmbeddedEnrollment,
    EnrollmentRepository,
    EnrollmentType,
    EntityKind,
    FieldChange,
    InvalidInput,
    MutationPropagator,
    ReferencedEnrollment,
    Resolver,
    SizeComparison,
    Student,
    compare_sizes,
    make_embedded,
    make_referenced,
)
import visualize_storage

logger = logging.getLogger(__name__)

MENU_CHOICES = range(0, 8)
DEFAULT_LOG_FILE = "enrollment_operations.log"

SAMPLE_STUDENTS: list[tuple[str, str, str, int]] = [
    ("John Smith", "S1001", "john.smith@example.com", 20),
    ("Emily Johnson", "S1002", "emily.johnson@example.com", 21),
    ("Michael Brown", "S1003", "michael.brown@example.com", 19),
]

SAMPLE_COURSES: list[tuple[str, str, int, str]] = [
    ("Introduction to Java Programming", "CS101", 3, "Prof. Anderson"),
    ("Database Management Systems", "CS202", 4, "Prof. Martinez"),
    ("Web Development Fundamentals", "CS303", 3, "Prof. Wilson"),
]

# (business key, new name) applied by the update step
NAME_UPDATES: list[tuple[str, str]] = [
    ("S1001", "John Smith-Updated"),
    ("S1002", "Emily Johnson-Updated"),
]


# ──────────────────────────────────────────────────────────────────────────────
# CONFIGURATION
# ──────────────────────────────────────────────────────────────────────────────

PROPERTY_KEYS = {
    "store.connection.string": "url",
    "store.api.key": "key",
    "store.database.name": "database",
    "store.collection.students": "students",
    "store.collection.courses": "courses",
    "store.collection.enrollments": "enrollments",
}

ENV_KEYS = {
    "ENROLLMENT_STORE_URL": "url",
    "SUPABASE_SERVICE_ROLE_KEY": "key",
    "SUPABASE_KEY": "key",  # wins over the service-role variable when both are set
    "ENROLLMENT_DATABASE": "database",
}


@dataclass
class AppConfig:
    url: str = "memory://local"
    key: str = ""
    database: str = "public"
    students: str = "students"
    courses: str = "courses"
    enrollments: str = "enrollments"
    output_dir: str = "./output"
    log_file: str | None = DEFAULT_LOG_FILE

    @property
    def collections(self) -> Collections:
        return Collections(
            students=self.students,
            courses=self.courses,
            enrollments=self.enrollments,
        )


def load_properties(path: Path) -> dict[str, str]:
    """Read a ``key=value`` properties file (``#`` comments allowed)."""
    if not path.exists():
        raise FileNotFoundError(f"Unable to find {path}")
    parser = configparser.ConfigParser(interpolation=None, delimiters=("=",), comment_prefixes=("#", "!"))
    parser.optionxform = str  # keep key case
    parser.read_string("[properties]\n" + path.read_text())
    return dict(parser["properties"])


def build_config(
    args: argparse.Namespace,
    environ: dict[str, str] | None = None,
) -> AppConfig:
    """Defaults < properties file < environment < command-line flags."""
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    if args.config:
        props = load_properties(Path(args.config))
        for prop, name in PROPERTY_KEYS.items():
            if prop in props:
                values[name] = props[prop].strip()

    for env_name, name in ENV_KEYS.items():
        if environ.get(env_name):
            values[name] = environ[env_name]

    for f in fields(AppConfig):
        flag_value = getattr(args, f.name, None)
        if flag_value is not None:
            values[f.name] = flag_value

    if getattr(args, "no_log_file", False):
        values["log_file"] = None

    return AppConfig(**values)


# ──────────────────────────────────────────────────────────────────────────────
# OPERATION LOG
# ──────────────────────────────────────────────────────────────────────────────

class OperationLog:
    """Prints operator output and keeps a copy for saving to a file."""

    def __init__(self, enabled: bool = True, echo: Callable[[str], None] = print):
        self.enabled = enabled
        self.entries: list[str] = []
        self._echo = echo

    def log(self, message: str = "") -> None:
        self._echo(message)
        if self.enabled:
            self.entries.append(message)

    def section(self, title: str) -> None:
        self.log(f"\n--- {title.upper()} ---")

    def json(self, document: dict[str, Any]) -> None:
        self.log(json.dumps(document, indent=2, default=str))

    def clear(self) -> None:
        self.entries.clear()

    def save(self, path: str | Path) -> Path | None:
        """Write buffered entries with a title and timestamp header."""
        if not self.enabled or not self.entries:
            return None
        path = Path(path)
        lines = [
            "Student Enrollment Relationship Demo - Operation Log",
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            "=" * 50,
            *self.entries,
        ]
        path.write_text("\n".join(lines) + "\n")
        self._echo(f"\nLog saved to file: {path}")
        return path


# ──────────────────────────────────────────────────────────────────────────────
# DEMO OPERATIONS
# ──────────────────────────────────────────────────────────────────────────────

def _describe(name: str, details: list[tuple[str, object]]) -> str:
    shown = ", ".join(f"{label}: {value}" for label, value in details if value is not None)
    return f"{name} ({shown})"


def _describe_student(student: Student) -> str:
    return _describe(student.name, [
        ("ID", student.student_id), ("Email", student.email), ("Age", student.age),
    ])


def _describe_course(course: Course) -> str:
    return _describe(course.name, [
        ("ID", course.course_id), ("Credits", course.credits), ("Instructor", course.instructor),
    ])


class EnrollmentDemo:
    """Drives the engine against one store and renders its results."""

    def __init__(
        self,
        store: DocumentStore,
        collections: Collections | None = None,
        log: OperationLog | None = None,
        output_dir: str | Path = "./output",
    ):
        self.store = store
        self.collections = collections or Collections()
        self.log = log or OperationLog()
        self.output_dir = Path(output_dir)
        self.repository = EnrollmentRepository(store, self.collections)
        self.resolver = Resolver(store, self.collections)
        self.propagator = MutationPropagator(store, self.collections)

    def _now(self) -> str:
        return datetime.now().isoformat(timespec="seconds")

    # ── Bootstrap ─────────────────────────────────────────────────────────

    def bootstrap(self) -> dict[str, bool]:
        """Create any missing collection. Returns name -> created."""
        created = {}
        existing = set(self.store.list_collections())
        for name in self.collections.all():
            if name in existing:
                self.log.log(f"Collection already exists: {name}")
                created[name] = False
            else:
                self.log.log(f"Creating {name} collection...")
                created[name] = self.store.ensure_collection(name)
        self.log.log("Collections initialized successfully")
        return created

    # ── 1. Clear ──────────────────────────────────────────────────────────

    def clear_all(self) -> dict[str, int]:
        self.log.log("Clearing previous data from collections...")
        removed = {name: self.store.clear(name) for name in self.collections.all()}
        self.log.log("All collections cleared.")
        return removed

    # ── 2. Seed ───────────────────────────────────────────────────────────

    def insert_sample_data(self) -> tuple[list[Student], list[Course]]:
        self.log.section("Inserting sample data")

        for name, student_id, email, age in SAMPLE_STUDENTS:
            self.store.create(self.collections.students, Student.new_document(name, student_id, email, age))
        self.log.log(f"Inserted {len(SAMPLE_STUDENTS)} students into the database")

        for name, course_id, credits, instructor in SAMPLE_COURSES:
            self.store.create(self.collections.courses, Course.new_document(name, course_id, credits, instructor))
        self.log.log(f"Inserted {len(SAMPLE_COURSES)} courses into the database")

        students = [Student.from_document(d) for d in self.store.find(self.collections.students)]
        courses = [Course.from_document(d) for d in self.store.find(self.collections.courses)]

        self.log.log("\nStudents in database:")
        for s in students:
            self.log.log(f"  - {_describe_student(s)}")
        self.log.log("\nCourses in database:")
        for c in courses:
            self.log.log(f"  - {_describe_course(c)}")
        return students, courses

    # ── 3. Create enrollments ─────────────────────────────────────────────

    def create_enrollments(self) -> tuple[ReferencedEnrollment, EmbeddedEnrollment] | None:
        self.log.section("Creating enrollments")

        student_doc = self.store.find_one(self.collections.students)
        course_doc = self.store.find_one(self.collections.courses)
        student2_doc = self.store.find_one(self.collections.students, skip=1)
        course2_doc = self.store.find_one(self.collections.courses, skip=1)
        if None in (student_doc, course_doc, student2_doc, course2_doc):
            self.log.log("Need at least 2 students and 2 courses. Insert sample data first.")
            return None

        student, course = Student.from_document(student_doc), Course.from_document(course_doc)
        referenced = self.repository.save(make_referenced(student.id, course.id, "A", self._now()))
        self.log.log("Created referenced enrollment with the following details:")
        self.log.log(f"  - Student: {student.name} (ID: {student.student_id})")
        self.log.log(f"  - Course: {course.name} (ID: {course.course_id})")
        self.log.log(f"  - Grade: {referenced.grade}")
        self.log.log("  - Using store ids as references")

        student2, course2 = Student.from_document(student2_doc), Course.from_document(course2_doc)
        embedded = self.repository.save(make_embedded(student2_doc, course2_doc, "B+", self._now()))
        self.log.log("\nCreated embedded enrollment with the following details:")
        self.log.log(f"  - Student: {student2.name} (ID: {student2.student_id})")
        self.log.log(f"  - Course: {course2.name} (ID: {course2.course_id})")
        self.log.log(f"  - Grade: {embedded.grade}")
        self.log.log("  - Using embedded documents (entire student and course documents included)")

        self.log.log("\nDocument structure comparison:")
        self.log.log("1. Referenced Enrollment (JSON):")
        self.log.json(referenced.to_document())
        self.log.log("\n2. Embedded Enrollment (JSON):")
        self.log.json(embedded.to_document())
        return referenced, embedded

    # ── 4. Query ──────────────────────────────────────────────────────────

    def _log_view(self, result) -> None:
        if isinstance(result, DanglingReference):
            self.log.log(
                f"Dangling reference: missing {', '.join(result.missing)} "
                f"(student ref {result.student_ref}, course ref {result.course_ref})"
            )
            return
        self.log.log(f"Enrollment Date: {result.date}")
        self.log.log(f"Grade: {result.grade}")
        self.log.log(f"Student: {result.student_name} (ID: {result.student_business_id})")
        self.log.log(f"Course: {result.course_name} (ID: {result.course_business_id})")
        self.log.log(f"Store lookups: {result.store_lookups}")

    def query_enrollments(self) -> dict[str, Any]:
        self.log.section("Querying enrollments")
        results: dict[str, Any] = {}

        self.log.log("Referenced enrollment:")
        referenced = self.repository.first(EnrollmentType.REFERENCED)
        if referenced is None:
            self.log.log("No referenced enrollment found")
        else:
            view = self.resolver.resolve(referenced)
            results["referenced"] = view
            self._log_view(view)
            self.log.log("\nReferenced Enrollment Document Structure:")
            self.log.json(referenced.to_document())
            if not isinstance(view, DanglingReference):
                self.log.log("\nReferenced Student Document:")
                self.log.json(self.store.find_by_id(self.collections.students, referenced.student_ref))
                self.log.log("\nReferenced Course Document:")
                self.log.json(self.store.find_by_id(self.collections.courses, referenced.course_ref))

        self.log.log("\nEmbedded enrollment:")
        embedded = self.repository.first(EnrollmentType.EMBEDDED)
        if embedded is None:
            self.log.log("No embedded enrollment found")
        else:
            view = self.resolver.resolve(embedded)
            results["embedded"] = view
            self._log_view(view)
            self.log.log("\nEmbedded Enrollment Document Structure:")
            self.log.json(embedded.to_document())

        comparison = self.compare(referenced, embedded)
        if comparison is not None:
            results["comparison"] = comparison
        return results

    def compare(self, referenced, embedded) -> SizeComparison | None:
        if referenced is None or embedded is None:
            self.log.log("\nDocument size comparison unavailable (need both enrollment types)")
            return None
        comparison = compare_sizes(referenced, embedded)
        if not comparison.available:
            self.log.log("\nDocument size comparison unavailable")
            return comparison

        self.log.log("\nDocument Size Comparison:")
        self.log.log(f"Referenced Enrollment: ~{comparison.referenced_bytes} bytes")
        self.log.log(f"Embedded Enrollment: ~{comparison.embedded_bytes} bytes")
        if comparison.ratio > 1:
            self.log.log(f"Embedded document is approximately {comparison.ratio:.1f}x larger")
        self.log.log(
            f"Embedded copies duplicate {comparison.duplicated_fields} entity fields "
            "that can go stale"
        )

        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / "size_comparison.json"
        path.write_text(json.dumps(comparison.to_dict(), indent=2))
        logger.info("Wrote %s", path)
        return comparison

    # ── 5. Update ─────────────────────────────────────────────────────────

    def update_student_names(self) -> list[FieldChange]:
        self.log.section("Updating student names")
        changes: list[FieldChange] = []

        for business_id, new_name in NAME_UPDATES:
            doc = self.store.find_one(self.collections.students, {"studentId": business_id})
            if doc is None:
                self.log.log(f"Student {business_id} not found")
                continue
            student = Student.from_document(doc)
            self.log.log(f"\nFound student: {student.name} (ID: {student.student_id})")
            self.log.log(f"Will update name to: {new_name}")

            change = self.propagator.update_entity_field(EntityKind.STUDENT, student.id, "name", new_name)
            if not isinstance(change, FieldChange):
                self.log.log(f"Student {business_id} disappeared before the update")
                continue
            changes.append(change)

            updated = self.store.find_by_id(self.collections.students, student.id)
            self.log.log("\nVerifying update in students collection:")
            self.log.log(f"  - Old name: {change.old_value}")
            self.log.log(f"  - New name: {updated['name'] if updated else '<missing>'}")
            self.log.log("  - Student document after update:")
            self.log.json(updated)

            observers = self.propagator.observers(change)
            self.log.log(
                f"  - Referenced enrollments that see the change: {len(observers.live)}; "
                f"embedded copies that keep the old value: {len(observers.frozen)}"
            )

        referenced = self.repository.first(EnrollmentType.REFERENCED)
        if referenced is not None:
            view = self.resolver.resolve(referenced)
            self.log.log("\nReferenced enrollment after update:")
            self._log_view(view)
            self.log.log("  - References always resolve to the current student document")

        embedded = self.repository.first(EnrollmentType.EMBEDDED)
        if embedded is not None:
            view = self.resolver.resolve(embedded)
            self.log.log("\nEmbedded enrollment after update:")
            self.log.log(f"  - After update, embedded student name: {view.student_name}")
            for stale in self.propagator.drift(embedded):
                if stale.canonical_missing:
                    self.log.log(f"  - Stale {stale.side.value}: canonical document {stale.entity_id} was deleted")
                else:
                    self.log.log(
                        f"  - Stale {stale.side.value}.{stale.field}: "
                        f"embedded={stale.snapshot_value!r} canonical={stale.canonical_value!r}"
                    )
            self.log.log("  - This demonstrates that embedded documents require separate updates")

        return changes

    # ── 6. Charts ─────────────────────────────────────────────────────────

    def render_charts(self) -> list[Path]:
        self.log.section("Rendering size charts")
        referenced = self.repository.first(EnrollmentType.REFERENCED)
        embedded = self.repository.first(EnrollmentType.EMBEDDED)
        if referenced is None or embedded is None:
            self.log.log("Need both enrollment types. Create enrollments first.")
            return []

        chart_dir = self.output_dir / "charts"
        chart_dir.mkdir(parents=True, exist_ok=True)
        visualize_storage.apply_theme()
        frame = visualize_storage.comparison_frame([("current", compare_sizes(referenced, embedded))])
        paths = [
            visualize_storage.chart_document_sizes(frame, chart_dir),
            visualize_storage.chart_field_breakdown(referenced, embedded, chart_dir),
        ]
        for path in paths:
            self.log.log(f"  Chart -> {path}")
        return paths

    # ── 7. Run all ────────────────────────────────────────────────────────

    def run_all(self) -> dict[str, Any]:
        self.log.log("Running all operations in sequence...")
        self.clear_all()
        self.insert_sample_data()
        self.create_enrollments()
        results = self.query_enrollments()
        results["changes"] = self.update_student_names()
        self.log.log("\nAll operations completed successfully!")
        return results

    def dispatch(self, choice: int) -> None:
        actions: dict[int, Callable[[], Any]] = {
            1: self.clear_all,
            2: self.insert_sample_data,
            3: self.create_enrollments,
            4: self.query_enrollments,
            5: self.update_student_names,
            6: self.render_charts,
            7: self.run_all,
        }
        actions[choice]()


# ──────────────────────────────────────────────────────────────────────────────
# MENU
# ──────────────────────────────────────────────────────────────────────────────

def display_menu(echo: Callable[[str], None] = print) -> None:
    echo("\n--- STUDENT ENROLLMENT RELATIONSHIP DEMO ---")
    echo("Please select an operation to perform:")
    echo("1. Clear all collections")
    echo("2. Insert sample students and courses")
    echo("3. Create enrollments (embedded and referenced)")
    echo("4. Query enrollments and show document structures")
    echo("5. Update student names (demonstrate reference vs. embedded)")
    echo("6. Render document size charts")
    echo("7. Run all operations in sequence")
    echo("0. Exit")


def parse_choice(text: str) -> int:
    """Menu selection from operator input; InvalidInput when not 0-7."""
    text = text.strip()
    try:
        choice = int(text)
    except ValueError:
        raise InvalidInput(f"not a number: {text!r}") from None
    if choice not in MENU_CHOICES:
        raise InvalidInput(f"out of range: {choice}")
    return choice


def run_menu(
    demo: EnrollmentDemo,
    input_fn: Callable[[str], str] = input,
    echo: Callable[[str], None] = print,
) -> None:
    """Interactive loop. Bad input re-prompts; EOF exits.

    A failed operation is reported and ends only that operation; the menu
    stays up so it can be retried.
    """
    display_menu(echo)
    while True:
        try:
            raw = input_fn("\nEnter your choice (0-7): ")
        except EOFError:
            echo("Exiting the application...")
            return
        try:
            choice = parse_choice(raw)
        except InvalidInput as e:
            logger.debug("Rejected menu input: %s", e)
            echo("Invalid choice. Please enter a number between 0 and 7.")
            continue

        if choice == 0:
            echo("Exiting the application...")
            return

        try:
            demo.dispatch(choice)
        except (StoreError, InvalidInput) as e:
            logger.error("Menu option %d failed: %s", choice, e)
            echo(f"Operation failed: {e}")

        try:
            input_fn("\nPress Enter to continue...")
        except EOFError:
            echo("Exiting the application...")
            return
        display_menu(echo)


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────

def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Embedded vs. referenced enrollment demo",
    )
    parser.add_argument("--config", help="Properties file with store settings")
    parser.add_argument("--url", help="Connection target: memory://name or a Supabase URL")
    parser.add_argument("--key", help="Supabase API key (service_role recommended)")
    parser.add_argument("--database", help="Database (Postgres schema) name")
    parser.add_argument("--students", help="Students collection name")
    parser.add_argument("--courses", help="Courses collection name")
    parser.add_argument("--enrollments", help="Enrollments collection name")
    parser.add_argument("--output-dir", dest="output_dir", help="Directory for JSON and charts")
    parser.add_argument("--log-file", dest="log_file", help=f"Operation log file (default {DEFAULT_LOG_FILE})")
    parser.add_argument("--no-log-file", action="store_true", help="Do not save the operation log")
    parser.add_argument("--run-all", action="store_true", help="Run every operation once and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def main(argv: list[str] | None = None, input_fn: Callable[[str], str] = input) -> int:
    args = make_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = build_config(args)
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        return 1

    log = OperationLog(enabled=config.log_file is not None)
    log.log(f"Connecting to store at: {config.url}")
    log.log(f"Creating/accessing database: {config.database}")

    try:
        store = open_store(config.url, config.key, config.database)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    try:
        with store:
            demo = EnrollmentDemo(store, config.collections, log, config.output_dir)
            demo.bootstrap()
            if args.run_all:
                demo.run_all()
            else:
                run_menu(demo, input_fn=input_fn, echo=log.log)
    except StoreUnavailable as e:
        print(f"ERROR: store unavailable: {e}")
        return 1
    except StoreError as e:
        print(f"ERROR: store error: {e}")
        return 1
    finally:
        if config.log_file:
            log.save(config.log_file)

    return 0


if __name__ == "__main__":
    sys.exit(main())

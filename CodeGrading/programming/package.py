# programming/package.py
"""
Programming question packages: validation and archive building.

Nothing here touches the database or storage. ``validate`` turns an uploaded archive or
online-editor input into a ValidatedPackage, or raises PackageValidationError whose
message dict is keyed by field path (``test_cases.private.2.expected``).

Archive layout
--------------
manifest.json   {"language": "...", "solution": "solution/main.py"?,
                 "test_cases": {"public": [...], "private": [...], "evaluation": [...]}}
submission/     template files handed to students (path below submission/ is the filename)
solution/       reference solution (optional)
prepend<ext>    code run before the program (optional)
append<ext>     code run after the program (optional)
data/           data files copied next to the program (optional)

A test-case row is {"expression": str, "expected": str, "hint": str?}.
"""
from __future__ import annotations

import io
import json
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

from . import languages
from .errors import MalformedPackage, PackageValidationError, UnknownLanguage

MANIFEST = "manifest.json"
TEMPLATE_DIR = "submission/"
SOLUTION_DIR = "solution/"
DATA_DIR = "data/"

TEST_CASE_KINDS = ("public", "private", "evaluation")

MAX_ARCHIVE_MEMBERS = 500
MAX_MEMBER_BYTES = 5 * 1024 * 1024
# Bounds how long one evaluation job may run, see queue.time_limits.
MAX_TEST_CASES = 100

# Raised by ZipFile while reading members of a damaged or unsupported archive.
UNREADABLE_ARCHIVE = (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError, RuntimeError)

BLANK = "This field cannot be blank."


@dataclass
class TemplateFileData:
    filename: str
    content: str


@dataclass
class TestCaseData:
    identifier: str
    test_case_type: str
    expression: str
    expected: str
    hint: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {"expression": self.expression, "expected": self.expected, "hint": self.hint}


@dataclass
class ValidatedPackage:
    language: str
    template_files: List[TemplateFileData] = field(default_factory=list)
    test_cases: List[TestCaseData] = field(default_factory=list)
    solution: str = ""
    prepend: str = ""
    append: str = ""
    data_files: Dict[str, bytes] = field(default_factory=dict)

    @property
    def auto_gradable(self) -> bool:
        return bool(self.test_cases)

    def program(self, body: Optional[str] = None) -> str:
        """The code the evaluator runs: prepend, then ``body`` (default: the solution,
        else the first template file), then append."""
        if body is None:
            body = self.solution or (self.template_files[0].content if self.template_files else "")
        return "\n".join(part for part in (self.prepend, body, self.append) if part)


def validate(package_type: str, language: str, payload: Any, *, autograded: bool = True) -> ValidatedPackage:
    """Validate archive bytes (zip_upload) or an online-editor dict (online_editor)."""
    if package_type == "zip_upload":
        return validate_archive(payload, language)
    if package_type == "online_editor":
        return validate_online_editor(language, payload, autograded=autograded)
    raise PackageValidationError({"package_type": f"Unknown package type {package_type!r}."})


# -----------------------
# Archive uploads
# -----------------------
def validate_archive(data: bytes, language: str) -> ValidatedPackage:
    errors: Dict[str, str] = {}
    lang = _resolve_language(language, errors)

    try:
        with zipfile.ZipFile(io.BytesIO(data or b"")) as zf:
            package = _read_archive(zf, lang, language, errors)
    except UNREADABLE_ARCHIVE as e:
        raise MalformedPackage({"file": f"The package archive could not be read: {e}"}) from e

    if errors:
        raise PackageValidationError(errors)
    return package


def _read_archive(zf: zipfile.ZipFile, lang, language: str, errors: Dict[str, str]) -> ValidatedPackage:
    members = _checked_members(zf)
    if MANIFEST not in members:
        raise MalformedPackage({"manifest": f"{MANIFEST} is missing from the package."})
    try:
        manifest = json.loads(zf.read(members[MANIFEST]).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPackage({"manifest": f"{MANIFEST} is not valid JSON: {e}"}) from e
    if not isinstance(manifest, dict):
        raise MalformedPackage({"manifest": f"{MANIFEST} must contain a JSON object."})

    declared = manifest.get("language")
    if declared is not None and lang is not None and declared != lang.key:
        errors["manifest.language"] = f"Package is for {declared!r} but the question uses {lang.key!r}."

    package = ValidatedPackage(language=lang.key if lang else (language or ""))

    for name in sorted(members):
        if name.startswith(TEMPLATE_DIR) and name != TEMPLATE_DIR:
            text = _read_text(zf, members[name], name, errors)
            if text is not None:
                package.template_files.append(TemplateFileData(name[len(TEMPLATE_DIR):], text))
        elif name.startswith(DATA_DIR) and name != DATA_DIR:
            package.data_files[name[len(DATA_DIR):]] = zf.read(members[name])

    solution_path = manifest.get("solution")
    if solution_path is None:
        solutions = sorted(n for n in members if n.startswith(SOLUTION_DIR))
        solution_path = solutions[0] if solutions else None
    if solution_path is not None:
        if not isinstance(solution_path, str) or solution_path not in members:
            errors["manifest.solution"] = f"Solution file {solution_path!r} is not in the package."
        else:
            package.solution = _read_text(zf, members[solution_path], solution_path, errors) or ""

    ext = lang.extension if lang else ""
    for part in ("prepend", "append"):
        name = f"{part}{ext}"
        if ext and name in members:
            setattr(package, part, _read_text(zf, members[name], name, errors) or "")

    rows = manifest.get("test_cases", {})
    if not isinstance(rows, dict):
        raise MalformedPackage({"manifest.test_cases": "test_cases must map a test-case kind to a list."})
    package.test_cases = _validate_test_cases(rows, autograded=True, errors=errors, malformed=True)
    return package


def _checked_members(zf: zipfile.ZipFile) -> Dict[str, zipfile.ZipInfo]:
    infos = [i for i in zf.infolist() if not i.is_dir()]
    if len(infos) > MAX_ARCHIVE_MEMBERS:
        raise MalformedPackage({"file": f"The package has more than {MAX_ARCHIVE_MEMBERS} files."})
    members: Dict[str, zipfile.ZipInfo] = {}
    for info in infos:
        path = PurePosixPath(info.filename)
        if path.is_absolute() or ".." in path.parts or "\\" in info.filename:
            raise MalformedPackage({"file": f"Unsafe path in package: {info.filename!r}."})
        if info.file_size > MAX_MEMBER_BYTES:
            raise MalformedPackage({"file": f"{info.filename} is larger than {MAX_MEMBER_BYTES // (1024 * 1024)} MB."})
        members[str(path)] = info
    return members


def _read_text(zf: zipfile.ZipFile, info: zipfile.ZipInfo, name: str, errors: Dict[str, str]) -> Optional[str]:
    try:
        return zf.read(info).decode("utf-8")
    except UnicodeDecodeError:
        errors[f"files.{name}"] = "Source files must be UTF-8 text."
        return None


# -----------------------
# Online editor
# -----------------------
def validate_online_editor(language: str, editor: Dict[str, Any], *, autograded: bool = True) -> ValidatedPackage:
    """Editor input: solution/prepend/append/submission code blocks, data_files
    (name -> bytes) and test_cases (kind -> rows)."""
    if not isinstance(editor, dict):
        raise PackageValidationError({"online_editor": "Editor input must be an object."})
    errors: Dict[str, str] = {}
    lang = _resolve_language(language, errors)
    package = ValidatedPackage(language=lang.key if lang else (language or ""))

    for part in ("solution", "prepend", "append"):
        value = editor.get(part) or ""
        if not isinstance(value, str):
            errors[part] = "Must be text."
        else:
            setattr(package, part, value)

    submission = editor.get("submission") or ""
    if not isinstance(submission, str):
        errors["submission"] = "Must be text."
    elif lang is not None:
        package.template_files.append(TemplateFileData(lang.source_name("template"), submission))

    data_files = editor.get("data_files") or {}
    if not isinstance(data_files, dict):
        errors["data_files"] = "Must map file names to contents."
    else:
        for name, content in data_files.items():
            clean = PurePosixPath(str(name)).name
            if not clean or clean in (".", ".."):
                errors[f"data_files.{name}"] = "Invalid file name."
                continue
            package.data_files[clean] = content.encode("utf-8") if isinstance(content, str) else bytes(content)

    rows = editor.get("test_cases") or {}
    if not isinstance(rows, dict):
        errors["test_cases"] = "test_cases must map a test-case kind to a list."
        rows = {}
    package.test_cases = _validate_test_cases(rows, autograded=autograded, errors=errors)

    if errors:
        raise PackageValidationError(errors)
    return package


# -----------------------
# Test cases (shared)
# -----------------------
def _validate_test_cases(rows: Dict[str, Any], *, autograded: bool, errors: Dict[str, str],
                         malformed: bool = False) -> List[TestCaseData]:
    """Blank fields and an empty test-case set are hard errors for auto-graded questions.
    With ``malformed`` set, schema violations raise MalformedPackage at once."""
    def schema_error(key: str, message: str):
        if malformed:
            raise MalformedPackage({key: message})
        errors[key] = message

    unknown = sorted(set(rows) - set(TEST_CASE_KINDS))
    for kind in unknown:
        schema_error(f"test_cases.{kind}", f"Unknown test-case kind {kind!r}.")

    test_cases: List[TestCaseData] = []
    for kind in TEST_CASE_KINDS:
        kind_rows = rows.get(kind) or []
        if not isinstance(kind_rows, list):
            schema_error(f"test_cases.{kind}", "Must be a list of test cases.")
            continue
        for index, row in enumerate(kind_rows):
            key = f"test_cases.{kind}.{index}"
            if not isinstance(row, dict):
                schema_error(key, "Must be an object with expression and expected.")
                continue
            values = {}
            for name in ("expression", "expected", "hint"):
                value = row.get(name, "")
                if value is None:
                    value = ""
                if not isinstance(value, str):
                    schema_error(f"{key}.{name}", "Must be text.")
                    value = ""
                values[name] = value
            if autograded:
                if not values["expression"].strip():
                    errors[f"{key}.expression"] = BLANK
                if not values["expected"].strip():
                    errors[f"{key}.expected"] = BLANK
            test_cases.append(TestCaseData(
                identifier=f"{kind}_{index + 1}",
                test_case_type=kind,
                expression=values["expression"],
                expected=values["expected"],
                hint=values["hint"],
            ))

    if autograded and not test_cases:
        errors["test_cases"] = "An auto-graded question needs at least one test case."
    elif len(test_cases) > MAX_TEST_CASES:
        errors["test_cases"] = f"A question can have at most {MAX_TEST_CASES} test cases."
    return test_cases


def _resolve_language(language: str, errors: Dict[str, str]):
    try:
        return languages.get(language)
    except UnknownLanguage:
        errors["language"] = f"Unsupported language {language!r}."
        return None


# -----------------------
# Building archives
# -----------------------
def build_archive(package: ValidatedPackage) -> bytes:
    """Write ``package`` in the archive layout; validate_archive() reads it back unchanged."""
    lang = languages.get(package.language)
    rows: Dict[str, List[Dict[str, str]]] = {kind: [] for kind in TEST_CASE_KINDS}
    for test_case in package.test_cases:
        rows[test_case.test_case_type].append(test_case.as_dict())

    manifest: Dict[str, Any] = {"language": lang.key, "test_cases": rows}
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        if package.solution:
            solution_name = SOLUTION_DIR + lang.source_name("solution")
            manifest["solution"] = solution_name
            _write(zf, solution_name, package.solution)
        for part in ("prepend", "append"):
            code = getattr(package, part)
            if code:
                _write(zf, lang.source_name(part), code)
        for template in package.template_files:
            _write(zf, TEMPLATE_DIR + template.filename, template.content)
        for name, content in sorted(package.data_files.items()):
            _write(zf, DATA_DIR + name, content)
        _write(zf, MANIFEST, json.dumps(manifest, indent=2, sort_keys=True))
    return buf.getvalue()


def _write(zf: zipfile.ZipFile, name: str, data) -> None:
    # Fixed timestamps: identical packages must produce identical bytes to share one attachment.
    info = zipfile.ZipInfo(name, date_time=(1980, 1, 1, 0, 0, 0))
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    zf.writestr(info, data)

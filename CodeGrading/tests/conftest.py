import io
import json
import zipfile
from types import SimpleNamespace

import pytest

from programming import queue, tasks
from programming.models import ProgrammingQuestion, Submission

SOLUTION = "def add(a, b):\n    return a + b\n"
TEMPLATE = "def add(a, b):\n    pass\n"
TEST_CASES = {
    "public": [{"expression": "add(1, 2)", "expected": "3", "hint": "small numbers"}],
    "private": [{"expression": "add(-1, 1)", "expected": "0"}],
    "evaluation": [{"expression": "add(10, 20)", "expected": "30"}],
}


def zip_package(manifest=None, files=None, language="python3.11", test_cases=None) -> bytes:
    """A package archive; ``manifest=False`` leaves the manifest out."""
    if files is None:
        files = {"submission/template.py": TEMPLATE, "solution/solution.py": SOLUTION}
    if manifest is None:
        manifest = {"language": language, "test_cases": TEST_CASES if test_cases is None else test_cases}
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
        if manifest is not False:
            zf.writestr("manifest.json", json.dumps(manifest))
    return buf.getvalue()


@pytest.fixture
def staff(django_user_model):
    return django_user_model.objects.create_user(username="prof", password="pw", is_staff=True)


@pytest.fixture
def student(django_user_model):
    return django_user_model.objects.create_user(username="student", password="pw")


@pytest.fixture
def question(db, staff):
    return ProgrammingQuestion.objects.create(title="Add two numbers", language="python3.11",
                                              time_limit=5, creator=staff, updater=staff)


@pytest.fixture
def submission(db, student):
    return Submission.objects.create(creator=student)


@pytest.fixture
def broker(monkeypatch):
    """Stands in for the Celery broker: records dispatched and revoked job ids and the options each dispatch carried."""
    state = SimpleNamespace(dispatched=[], revoked=[], options={}, down=False)

    def apply_async(args=None, kwargs=None, task_id=None, **options):
        if state.down:
            raise ConnectionError("broker unreachable")
        state.dispatched.append(task_id)
        state.options[task_id] = options

    monkeypatch.setattr(tasks.evaluate_job, "apply_async", apply_async)
    monkeypatch.setattr(queue, "_revoke", lambda job_id: state.revoked.append(str(job_id)))
    return state

from __future__ import annotations

import base64
from pathlib import Path

import allure
import pytest
from conftest import FakeRuntime, aborted, failed

from lvgl_sim_builder.pipeline.broker import HELPER_LABEL_KEY, helper_container
from lvgl_sim_builder.pipeline.errors import (
    AbortedError,
    CopyFailedError,
    HelperContainerError,
)
from lvgl_sim_builder.pipeline.models import CommandOutcome
from lvgl_sim_builder.pipeline.runtime import parse_container_id

pytestmark = [
    allure.epic("Build Pipeline"),
    allure.feature("Ephemeral Container Broker"),
]


def test_helper_is_stopped_after_successful_block(fake_runtime: FakeRuntime) -> None:
    with helper_container(fake_runtime) as helper:
        assert helper.container_id in fake_runtime.running_helpers

    assert fake_runtime.running_helpers == set()
    assert fake_runtime.commands("stop") == [("stop", helper.container_id)]


def test_helper_is_stopped_when_a_step_fails(fake_runtime: FakeRuntime, tmp_path: Path) -> None:
    fake_runtime.fail_when = lambda call: failed("no space") if call[0] == "copy_into" else None

    with pytest.raises(CopyFailedError) as error, helper_container(fake_runtime) as helper:
        helper.copy_dir_contents(tmp_path, "/project/src")

    assert error.value.output == "no space"
    assert fake_runtime.running_helpers == set()


def test_helper_is_stopped_when_a_step_is_aborted(fake_runtime: FakeRuntime) -> None:
    fake_runtime.fail_when = lambda call: aborted() if call[0] == "exec" else None

    with pytest.raises(AbortedError), helper_container(fake_runtime) as helper:
        helper.make_dirs("/project/fonts")

    assert fake_runtime.running_helpers == set()


def test_start_failure_raises_helper_error(fake_runtime: FakeRuntime) -> None:
    fake_runtime.fail_when = (
        lambda call: failed("no such service") if call == ("run_detached",) else None
    )

    with pytest.raises(HelperContainerError, match="temporary container"):
        with helper_container(fake_runtime):
            pytest.fail("block must not run")


def test_interrupted_start_releases_labelled_orphans() -> None:
    class _OrphanRuntime(FakeRuntime):
        def __init__(self) -> None:
            super().__init__()
            self.labels: list[str] = []

        def run_detached(self, *, label: str | None = None):
            self.labels.append(label or "")
            self.running_helpers.add("orphan")
            return CommandOutcome(success=False, exit_code=-15, aborted=True), None

        def list_labelled(self, label: str) -> list[str]:
            return ["orphan"] if label in self.labels else []

    runtime = _OrphanRuntime()

    with pytest.raises(AbortedError), helper_container(runtime):
        pytest.fail("block must not run")

    assert runtime.labels[0].startswith(f"{HELPER_LABEL_KEY}=")
    assert runtime.running_helpers == set()


def test_copy_dir_contents_copies_directory_contents(
    fake_runtime: FakeRuntime,
    tmp_path: Path,
) -> None:
    with helper_container(fake_runtime) as helper:
        helper.copy_dir_contents(tmp_path, "/project/src")

    assert fake_runtime.commands("copy_into") == [
        ("copy_into", helper.container_id, f"{tmp_path.resolve()}/.", "/project/src/"),
    ]


def test_write_text_pipes_base64_through_shell(fake_runtime: FakeRuntime) -> None:
    with helper_container(fake_runtime) as helper:
        helper.write_text("/project/fonts.txt", "/fonts/a.ttf\n")

    script = fake_runtime.commands("exec")[-1][-1]
    encoded = base64.b64encode(b"/fonts/a.ttf\n").decode("ascii")
    assert script == f"echo {encoded} | base64 -d > /project/fonts.txt"


def test_copy_out_failure_is_returned_to_caller(
    fake_runtime: FakeRuntime,
    tmp_path: Path,
) -> None:
    with helper_container(fake_runtime) as helper:
        outcome = helper.copy_out("/project/build/index.data", tmp_path / "index.data")

    assert not outcome.success


@pytest.mark.parametrize(
    ("stdout", "expected"),
    [
        ("3f2a9c\n", "3f2a9c"),
        ("Creating network\n\n9b1d7e0c\n", "9b1d7e0c"),
        ("", None),
        ("not an id\n", None),
    ],
)
def test_parse_container_id(stdout: str, expected: str | None) -> None:
    assert parse_container_id(stdout) == expected


def test_exists_probes_quietly(fake_runtime: FakeRuntime) -> None:
    fake_runtime.fail_when = lambda call: failed("") if call[-1] == "/project/missing" else None

    with helper_container(fake_runtime) as helper:
        assert helper.exists("/project/build.sh")
        assert not helper.exists("/project/missing")

    assert ("exec", helper.container_id, "test", "-e", "/project/build.sh") in fake_runtime.calls

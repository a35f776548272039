import threading
import time

import pytest

from relayci.artifacts import ArtifactStore
from relayci.errors import CycleError
from relayci.model import Event, Job, JobStatus, Pipeline, PipelineRun, RunStatus, Step
from relayci.scheduler import run_pipeline
from relayci.secrets import StaticSecretProvider


def sh(name, cmd, **kw):
    return Step(name=name, run=cmd, **kw)


class RecordingSink:
    def __init__(self):
        self.summaries = []

    def notify(self, summary):
        self.summaries.append(summary)


def build_test_scan_push(scan_cmd="true"):
    return Pipeline("ci", [
        Job("build", [
            sh("compile", "mkdir -p dist && echo wheel > dist/app.whl"),
            Step("upload", uses="upload-artifact", with_={"name": "dist", "path": "dist/"}),
        ]),
        Job("test", [
            Step("fetch", uses="download-artifact", with_={"name": "dist", "path": "in"}),
            sh("check", "test -f in/dist/app.whl && mkdir -p reports && echo ok > reports/result.txt"),
            Step("report", uses="upload-artifact", with_={"name": "test-report", "path": "reports/"}),
        ], needs=["build"]),
        Job("scan", [sh("scan", scan_cmd)], needs=["build"]),
        Job("push", [sh("push", "echo pushing")], needs=["test", "scan"]),
    ])


def test_happy_path(make_scheduler, backend):
    run = PipelineRun(build_test_scan_push(), run_id="r1")
    status = make_scheduler(isolate_workspaces=True).run(run)
    assert status is RunStatus.SUCCESS
    assert run.statuses() == {n: JobStatus.SUCCESS for n in ("build", "test", "scan", "push")}
    assert "pushing" in run.jobs["push"].log


def test_failed_scan_blocks_push_but_test_completes(make_scheduler, backend):
    run = PipelineRun(build_test_scan_push(scan_cmd="exit 1"), run_id="r2")
    status = make_scheduler(isolate_workspaces=True).run(run)

    assert status is RunStatus.FAILURE
    assert run.status_of("scan") is JobStatus.FAILURE
    assert run.status_of("test") is JobStatus.SUCCESS
    assert run.status_of("push") is JobStatus.SKIPPED
    assert run.jobs["push"].reason == "dependency scan failure"
    assert run.jobs["push"].started_at is None
    assert ArtifactStore(backend, "r2").read("test-report") == {"reports/result.txt": b"ok\n"}


def test_dependencies_finish_before_dependents_start(make_scheduler):
    run = PipelineRun(build_test_scan_push(), run_id="r3")
    make_scheduler(isolate_workspaces=True).run(run)
    jobs = run.jobs
    assert jobs["build"].finished_at <= jobs["test"].started_at
    assert jobs["build"].finished_at <= jobs["scan"].started_at
    assert max(jobs["test"].finished_at, jobs["scan"].finished_at) <= jobs["push"].started_at


def test_independent_jobs_run_in_parallel(make_scheduler):
    pipeline = Pipeline("p", [Job(f"j{i}", [sh("sleep", "sleep 0.5")]) for i in range(4)])
    run = PipelineRun(pipeline)
    started = time.monotonic()
    make_scheduler(max_workers=4).run(run)
    assert run.status is RunStatus.SUCCESS
    assert time.monotonic() - started < 1.8


def test_run_pipeline_helper(tmp_path, backend, base_env):
    pipeline = Pipeline("p", [Job("a", [sh("a", "echo hi")])])
    run = run_pipeline(pipeline, workspace=tmp_path, artifact_backend=backend, base_env=base_env)
    assert run.status is RunStatus.SUCCESS
    assert run.artifacts is not None


def test_max_workers_limits_concurrency(make_scheduler):
    running = []
    peak = [0]
    lock = threading.Lock()

    def on_start(jr):
        with lock:
            running.append(jr.name)
            peak[0] = max(peak[0], len(running))

    def on_finish(jr):
        with lock:
            if jr.name in running:
                running.remove(jr.name)

    pipeline = Pipeline("p", [Job(f"j{i}", [sh("sleep", "sleep 0.2")]) for i in range(5)])
    run = PipelineRun(pipeline)
    make_scheduler(max_workers=2, on_job_start=on_start, on_job_finish=on_finish).run(run)
    assert run.status is RunStatus.SUCCESS
    assert peak[0] <= 2


def test_condition_runs_cleanup_after_failure(make_scheduler):
    pipeline = Pipeline("p", [
        Job("build", [sh("fail", "exit 1")]),
        Job("notify", [sh("say", "echo build broke")], needs=["build"], condition="failure()"),
        Job("deploy", [sh("go", "echo deploy")], needs=["build"]),
    ])
    run = PipelineRun(pipeline)
    make_scheduler().run(run)
    assert run.status_of("notify") is JobStatus.SUCCESS
    assert run.status_of("deploy") is JobStatus.SKIPPED
    assert run.status is RunStatus.FAILURE


def test_condition_false_skips_without_failing(make_scheduler):
    pipeline = Pipeline("p", [
        Job("a", [sh("a", "true")]),
        Job("release", [sh("r", "true")], needs=["a"], condition="event.branch == 'main'"),
    ])
    run = PipelineRun(pipeline, Event("push", ref="refs/heads/feature"))
    make_scheduler().run(run)
    assert run.status_of("release") is JobStatus.SKIPPED
    assert run.jobs["release"].reason == "condition false"
    assert run.status is RunStatus.SUCCESS


def test_optional_job_failure_does_not_fail_run(make_scheduler):
    pipeline = Pipeline("p", [
        Job("lint", [sh("lint", "exit 1")], optional=True),
        Job("test", [sh("t", "true")], needs=["lint"]),
    ])
    run = PipelineRun(pipeline)
    make_scheduler().run(run)
    assert run.status_of("lint") is JobStatus.FAILURE
    assert run.status_of("test") is JobStatus.SUCCESS
    assert run.status is RunStatus.SUCCESS


def test_fail_fast_cancels_pending_jobs(make_scheduler):
    pipeline = Pipeline("p", [
        Job("bad", [sh("x", "exit 1")]),
        Job("slow", [sh("wait", "sleep 0.5")]),
        Job("later", [sh("l", "true")], needs=["slow"], condition="always()"),
    ])
    run = PipelineRun(pipeline)
    make_scheduler(fail_fast=True).run(run)
    assert run.status_of("bad") is JobStatus.FAILURE
    assert run.status_of("later") is JobStatus.CANCELLED
    assert run.status is RunStatus.FAILURE


def test_cancel_stops_running_and_pending_jobs(make_scheduler):
    pipeline = Pipeline("p", [
        Job("long", [sh("sleep", "sleep 30")]),
        Job("after", [sh("a", "true")], needs=["long"], condition="always()"),
    ])
    run = PipelineRun(pipeline)
    threading.Timer(0.5, run.cancel).start()
    started = time.monotonic()
    status = make_scheduler(grace_period=0.5).run(run)

    assert status is RunStatus.CANCELLED
    assert run.status_of("long") is JobStatus.CANCELLED
    assert run.status_of("after") is JobStatus.CANCELLED
    assert time.monotonic() - started < 10


def test_job_timeout_fails_job(make_scheduler):
    pipeline = Pipeline("p", [Job("slow", [sh("s", "sleep 30")], timeout=0.3)])
    run = PipelineRun(pipeline)
    make_scheduler().run(run)
    assert run.status_of("slow") is JobStatus.FAILURE
    assert run.jobs["slow"].reason == "Timeout"


def test_invalid_graph_fails_before_any_job(make_scheduler):
    sink = RecordingSink()
    pipeline = Pipeline("p", [Job("a", [sh("a", "true")], needs=["b"]), Job("b", [sh("b", "true")], needs=["a"])])
    run = PipelineRun(pipeline)
    with pytest.raises(CycleError):
        make_scheduler(sinks=[sink]).run(run)
    assert run.status is RunStatus.FAILURE
    assert all(jr.started_at is None for jr in run.jobs.values())
    assert sink.summaries[0]["status"] == "failure"


def test_bad_condition_fails_only_that_job(make_scheduler):
    pipeline = Pipeline("p", [
        Job("a", [sh("a", "true")], condition="contains(event.ref)"),
        Job("b", [sh("b", "true")]),
    ])
    run = PipelineRun(pipeline)
    make_scheduler().run(run)
    assert run.status_of("a") is JobStatus.FAILURE
    assert run.jobs["a"].reason == "ConditionError"
    assert run.status_of("b") is JobStatus.SUCCESS


def test_secrets_reach_only_authorized_jobs_and_are_masked(make_scheduler):
    pipeline = Pipeline("p", [
        Job("deploy", [sh("use", 'echo "token=$TOKEN"')], secrets=["TOKEN"]),
        Job("other", [sh("peek", 'echo "token=$TOKEN"')]),
    ])
    run = PipelineRun(pipeline)
    sink = RecordingSink()
    make_scheduler(secrets=StaticSecretProvider({"TOKEN": "hunter2"}), sinks=[sink]).run(run)
    assert "token=***" in run.jobs["deploy"].log
    assert "token=" in run.jobs["other"].log
    assert "hunter2" not in repr(sink.summaries)


def test_run_context_variables(make_scheduler):
    pipeline = Pipeline("p", [Job("ctx", [sh("show", 'echo "$CI $RELAYCI_JOB $RELAYCI_BRANCH"')])])
    run = PipelineRun(pipeline, Event("push", ref="refs/heads/main"))
    make_scheduler().run(run)
    assert "true ctx main" in run.jobs["ctx"].log


def test_summary_is_sent_to_sinks(make_scheduler):
    sink = RecordingSink()
    run = PipelineRun(Pipeline("p", [Job("a", [sh("a", "true")])]), run_id="abc")
    make_scheduler(sinks=[sink]).run(run)
    summary = sink.summaries[-1]
    assert summary["run_id"] == "abc"
    assert summary["status"] == "success"
    assert summary["jobs"][0]["name"] == "a"


def test_failure_handler_sees_failures_further_upstream(make_scheduler):
    pipeline = Pipeline("p", [
        Job("build", [sh("fail", "exit 1")]),
        Job("test", [sh("t", "echo testing")], needs=["build"]),
        Job("report", [sh("r", "echo reporting")], needs=["test"], condition="failure()"),
        Job("publish", [sh("p", "echo publishing")], needs=["test"]),
    ])
    run = PipelineRun(pipeline)
    make_scheduler().run(run)
    assert run.status_of("test") is JobStatus.SKIPPED
    assert run.status_of("report") is JobStatus.SUCCESS
    assert "reporting" in run.jobs["report"].log
    assert run.status_of("publish") is JobStatus.SKIPPED
    assert run.status is RunStatus.FAILURE


def test_crashing_job_fails_with_masked_message(make_scheduler):
    def broken_worker(runs_on, grace_period):
        raise RuntimeError("could not reach runner with token hunter2")

    pipeline = Pipeline("p", [Job("deploy", [sh("go", "true")], secrets=["TOKEN"])])
    run = PipelineRun(pipeline)
    make_scheduler(
        secrets=StaticSecretProvider({"TOKEN": "hunter2"}),
        worker_factory=broken_worker,
    ).run(run)
    assert run.status_of("deploy") is JobStatus.FAILURE
    assert run.jobs["deploy"].reason == "RuntimeError"
    assert "ERROR: RuntimeError: could not reach runner with token ***" in run.jobs["deploy"].log
    assert "hunter2" not in "\n".join(run.jobs["deploy"].log)


def test_isolated_jobs_get_their_own_copy_of_the_workspace(make_scheduler, tmp_path):
    (tmp_path / "source.txt").write_text("src")
    pipeline = Pipeline("p", [
        Job("a", [sh("write", "test -f source.txt && echo a > scratch.txt")]),
        Job("b", [sh("check", "test -f source.txt && test ! -f scratch.txt")], needs=["a"]),
    ])
    run = PipelineRun(pipeline, run_id="iso")
    status = make_scheduler(isolate_workspaces=True, copy_workspace=True).run(run)
    assert status is RunStatus.SUCCESS, run.jobs["b"].log
    assert not (tmp_path / "scratch.txt").exists()
    copied = tmp_path / ".relayci" / "work" / "iso" / "b"
    assert (copied / "source.txt").read_text() == "src"
    assert not (copied / ".relayci").exists()

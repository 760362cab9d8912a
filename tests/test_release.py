import pytest

from shipline.dsl import job, pipeline
from shipline.errors import ConfigurationError, NoOpRelease, StepCancelled
from shipline.executor import StepContext
from shipline.model import JobStatus, RunOutcome, RunRecord, JobRecord
from shipline.release import ReleaseController, Version, next_version, release_step, sort_tags


@pytest.mark.parametrize(
    "tags, bump, expected",
    [
        ([], "patch", "v0.0.1"),
        ([], "minor", "v0.1.0"),
        ([], "major", "v1.0.0"),
        (["v1.9.9"], "patch", "v1.9.10"),
        (["v1.9.9"], "minor", "v1.10.0"),
        (["v1.9.9"], "major", "v2.0.0"),
        (["v1.2.3", "v1.10.0", "v1.9.0"], "patch", "v1.10.1"),
        (["1.4.0"], "patch", "1.4.1"),
        (["v1.0.0", "not-a-version", "latest"], "minor", "v1.1.0"),
    ],
)
def test_next_version(tags, bump, expected):
    assert next_version(tags, bump).tag == expected


def test_next_version_ignores_prereleases_as_base():
    assert next_version(["v1.2.0", "v1.3.0-rc.1"], "minor").tag == "v1.3.0"
    # a pre-release above the bumped candidate is finalized instead
    assert next_version(["v1.2.0", "v2.0.0-beta.2"], "patch").tag == "v2.0.0"


def test_unknown_bump_rejected():
    with pytest.raises(ConfigurationError):
        next_version(["v1.0.0"], "huge")


def test_precedence_order():
    ordered = [
        "1.0.0-alpha",
        "1.0.0-alpha.1",
        "1.0.0-alpha.beta",
        "1.0.0-beta",
        "1.0.0-beta.2",
        "1.0.0-beta.11",
        "1.0.0-rc.1",
        "1.0.0",
        "1.0.1",
        "1.9.0",
        "1.10.0",
        "2.0.0",
    ]
    versions = [Version.parse(t) for t in ordered]
    assert sorted(reversed(versions)) == versions
    assert [v.raw for v in sorted(versions[::-1])] == ordered


def test_build_metadata_and_prefix_do_not_affect_precedence():
    assert Version.parse("v1.2.3") == Version.parse("1.2.3+build.7")
    assert sort_tags(["v1.2.3", "1.2.3"]) == ["1.2.3", "v1.2.3"]


def test_parse_rejects_non_versions():
    assert Version.try_parse("release-candidate") is None
    with pytest.raises(ValueError):
        Version.parse("1.2")


def test_cut_release_tags_and_records(source, store):
    source.tag_commits = {"v1.9.9": "old"}
    controller = ReleaseController(source, store)

    release = controller.cut_release(artifacts=["dist/app.tar.gz"])

    assert release.tag == "v1.9.10"
    assert release.commit == source.head
    assert release.artifacts == ("dist/app.tar.gz",)
    assert release.notes == "- Fix login redirect\n- Add health endpoint"
    assert source.created == [("v1.9.10", source.head, release.notes)]
    assert source.since == ["v1.9.9"]
    assert [r.tag for r in store.list_releases()] == ["v1.9.10"]


def test_rerun_on_same_commit_is_noop(source, store):
    controller = ReleaseController(source, store)
    first = controller.cut_release()

    with pytest.raises(NoOpRelease):
        controller.cut_release()
    with pytest.raises(NoOpRelease):
        controller.cut_release("major")

    assert [r.tag for r in store.list_releases()] == [first.tag]
    assert len(source.created) == 1


def test_release_recorded_only_in_store_is_noop(source, store):
    controller = ReleaseController(source, store)
    controller.cut_release()
    source.tag_commits.clear()  # tag deleted from the remote, history kept
    with pytest.raises(NoOpRelease):
        controller.cut_release()


def test_prerelease_on_commit_can_be_finalized(source):
    source.tag_commits = {"v0.9.0": "a", "v1.0.0-rc.1": source.head}
    release = ReleaseController(source).cut_release()
    assert release.tag == "v1.0.0"
    assert source.since == ["v1.0.0-rc.1"]


def test_shallow_history_is_configuration_error(source):
    source.shallow = True
    with pytest.raises(ConfigurationError):
        ReleaseController(source).cut_release()
    assert source.created == []


def test_new_commit_gets_next_version(source, store):
    controller = ReleaseController(source, store, bump="minor")
    assert controller.cut_release().tag == "v0.1.0"
    source.head = "f" * 40
    assert controller.cut_release().tag == "v0.2.0"


def test_explicit_notes_kept(source):
    release = ReleaseController(source).cut_release(notes="Hand-written notes")
    assert release.notes == "Hand-written notes"
    assert source.since == []


def test_release_after_run_only_for_successful_main(source):
    controller = ReleaseController(source)
    failed = RunRecord("r1", "main", {"a": JobRecord("a", JobStatus.FAILED)}, outcome=RunOutcome.FAILED)
    other = RunRecord("r2", "nightly", {}, outcome=RunOutcome.SUCCEEDED)
    ok = RunRecord("r3", "main", {}, outcome=RunOutcome.SUCCEEDED)

    assert controller.release_after_run(failed) is None
    assert controller.release_after_run(other) is None
    assert controller.release_after_run(ok).tag == "v0.0.1"


def test_release_step_runs_as_job(make_scheduler, source, store):
    controller = ReleaseController(source, store)
    p = pipeline("main", job("release", release_step(controller)))

    first = make_scheduler(p).run()
    assert first.jobs["release"].status is JobStatus.SUCCEEDED
    assert "created release v0.0.1" in first.jobs["release"].log

    # same commit again: the job fails with NoOpRelease and nothing new is tagged
    second = make_scheduler(p).run()
    assert second.jobs["release"].status is JobStatus.FAILED
    assert second.jobs["release"].error_kind == "NoOpRelease"
    assert len(store.list_releases()) == 1


def test_release_step_does_not_tag_once_cancelled(tmp_path, source, store):
    step = release_step(ReleaseController(source, store))
    ctx = StepContext(job="release", workdir=tmp_path, env={})
    ctx.cancel_event.set()

    with pytest.raises(StepCancelled):
        step.fn(ctx)
    assert source.created == []
    assert store.list_releases() == []

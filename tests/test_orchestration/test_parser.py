"""
Tests for runway.orchestration.parser
=======================================

What's Being Tested:
    - Document shapes (full, bare mapping, list of jobs) and step shorthands
    - Topological order and reverse adjacency
    - Every definition error, with the offending job and field
    - Cycle detection, including on randomized graphs
    - Artifact flow checks and concurrency groups
"""

import random
import textwrap
from pathlib import Path

import pytest

from runway.core.config import SchedulerConfig
from runway.core.enums import StepKind, TriggerEventType
from runway.core.exceptions import (
    CyclicGraphError,
    DefinitionError,
    DuplicateJobNameError,
    InvalidConcurrencyGroupError,
    InvalidTriggerPatternError,
    UnknownArtifactError,
    UnknownDependencyError,
)
from runway.orchestration.parser import PipelineParser


# =============================================================================
# Tests: Document Shapes
# =============================================================================
class TestDocumentShapes:
    """The accepted ways of writing a pipeline."""

    def test_full_document(self, site_graph) -> None:
        assert site_graph.name == "site"
        assert site_graph.env == {"NODE_ENV": "production"}
        assert site_graph.topological_order == ("build", "test", "deploy")
        assert site_graph.concurrency_limits == {"deploy": 1}
        assert site_graph.dependents == {"build": ("test",), "test": ("deploy",), "deploy": ()}

    def test_bare_job_mapping(self, parser: PipelineParser) -> None:
        graph = parser.parse({"build": {"steps": ["make"]}}, name="bare")
        assert graph.name == "bare"
        assert list(graph.jobs) == ["build"]

    def test_list_of_jobs(self, parser: PipelineParser) -> None:
        graph = parser.parse({"jobs": [
            {"name": "build", "steps": ["make"]},
            {"name": "test", "dependsOn": "build", "steps": ["make test"]},
        ]})
        assert graph.topological_order == ("build", "test")

    def test_parse_yaml(self, parser: PipelineParser) -> None:
        graph = parser.parse_yaml(textwrap.dedent("""
            name: docs
            jobs:
              build:
                steps:
                  - mkdocs build
              publish:
                dependsOn: [build]
                allowFailure: true
                steps:
                  - run: ./publish.sh
                    name: publish
        """))
        assert graph.name == "docs"
        assert graph.jobs["publish"].allow_failure is True

    def test_parse_file_uses_stem_as_default_name(
        self, parser: PipelineParser, tmp_path: Path,
    ) -> None:
        path = tmp_path / "nightly.yaml"
        path.write_text("build:\n  steps: [make]\n")
        assert parser.parse_file(path).name == "nightly"

    def test_parse_file_missing(self, parser: PipelineParser, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            parser.parse_file(tmp_path / "missing.yaml")

    def test_step_shorthands(self, site_graph) -> None:
        build_steps = site_graph.jobs["build"].steps
        assert [step.name for step in build_steps] == ["install", "compile", "upload-site"]
        assert build_steps[2].kind == StepKind.UPLOAD_ARTIFACT
        assert build_steps[2].path == "public/"

        deploy_steps = site_graph.jobs["deploy"].steps
        assert deploy_steps[0].kind == StepKind.DOWNLOAD_ARTIFACT
        assert deploy_steps[0].name == "download-site"

    def test_string_and_unnamed_run_steps_get_positional_names(
        self, parser: PipelineParser,
    ) -> None:
        graph = parser.parse({"lint": {"steps": ["ruff .", {"run": "mypy ."}, {"gate": "style"}]}})
        steps = graph.jobs["lint"].steps
        assert [step.name for step in steps] == ["step-1", "step-2", "gate-style"]
        assert steps[1].command == "mypy ."
        assert steps[2].kind == StepKind.GATE

    def test_env_values_become_strings(self, parser: PipelineParser) -> None:
        graph = parser.parse({"jobs": {"build": {
            "env": {"RETRIES": 3, "DEBUG": True, "EMPTY": None},
            "steps": ["make"],
        }}})
        assert graph.jobs["build"].env == {"RETRIES": "3", "DEBUG": "true", "EMPTY": ""}

    def test_trigger_and_retry(self, parser: PipelineParser) -> None:
        graph = parser.parse({"deploy": {
            "trigger": {"events": "push", "branches": "main", "pathsIgnore": ["*.md"]},
            "retry": {"attempts": 3, "backoff": 1.5},
            "steps": ["./deploy.sh"],
        }})
        job = graph.jobs["deploy"]
        assert job.trigger.events == [TriggerEventType.PUSH]
        assert job.trigger.branches == ["main"]
        assert job.trigger.paths_ignore == ["*.md"]
        assert job.retry.attempts == 3

    def test_duplicate_dependencies_collapse(self, parser: PipelineParser) -> None:
        graph = parser.parse({
            "a": {"steps": ["x"]},
            "b": {"dependsOn": ["a", "a"], "steps": ["y"]},
        })
        assert graph.jobs["b"].depends_on == ["a"]
        assert graph.dependents["a"] == ("b",)


# =============================================================================
# Tests: Topological Order
# =============================================================================
class TestTopologicalOrder:

    def test_dependencies_come_first(self, diamond_graph) -> None:
        order = diamond_graph.topological_order
        assert order[0] == "A" and order[-1] == "D"
        assert set(order[1:3]) == {"B", "C"}

    def test_ties_follow_document_order(self, parser: PipelineParser) -> None:
        graph = parser.parse({
            "zeta": {"steps": ["x"]},
            "alpha": {"steps": ["x"]},
            "mid": {"dependsOn": ["zeta", "alpha"], "steps": ["x"]},
        })
        assert graph.topological_order == ("zeta", "alpha", "mid")


# =============================================================================
# Tests: Definition Errors
# =============================================================================
class TestDefinitionErrors:
    """Each problem is reported with its job and field."""

    def test_empty_document(self, parser: PipelineParser) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse_yaml("")
        assert exc_info.value.error_code == "EMPTY_PIPELINE"

    def test_non_mapping_document(self, parser: PipelineParser) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse_yaml("- a\n- b\n")
        assert exc_info.value.error_code == "INVALID_DOCUMENT"

    def test_invalid_yaml(self, parser: PipelineParser) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse_yaml("jobs: {build: [unclosed")
        assert exc_info.value.error_code == "INVALID_YAML"

    def test_no_jobs(self, parser: PipelineParser) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse({"name": "empty", "jobs": {}})
        assert exc_info.value.error_code == "NO_JOBS"

    def test_unknown_top_level_key(self, parser: PipelineParser) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse({"jobs": {"a": {"steps": ["x"]}}, "stages": []})
        assert exc_info.value.error_code == "UNKNOWN_FIELD"
        assert exc_info.value.field == "stages"

    def test_duplicate_job_name_in_yaml(self, parser: PipelineParser) -> None:
        text = textwrap.dedent("""
            jobs:
              build:
                steps: [make]
              build:
                steps: [make all]
        """)
        with pytest.raises(DuplicateJobNameError) as exc_info:
            parser.parse_yaml(text)
        assert exc_info.value.job == "build"

    def test_duplicate_job_name_in_list(self, parser: PipelineParser) -> None:
        with pytest.raises(DuplicateJobNameError):
            parser.parse({"jobs": [{"name": "a", "steps": ["x"]}, {"name": "a", "steps": ["y"]}]})

    def test_duplicate_key_elsewhere(self, parser: PipelineParser) -> None:
        text = "build:\n  steps: [make]\n  env: {A: 1, A: 2}\n"
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse_yaml(text)
        assert exc_info.value.error_code == "DUPLICATE_KEY"

    def test_invalid_job_name(self, parser: PipelineParser) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse({"build it": {"steps": ["make"]}})
        assert exc_info.value.error_code == "INVALID_JOB_NAME"

    def test_mismatched_inner_name(self, parser: PipelineParser) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse({"build": {"name": "compile", "steps": ["make"]}})
        assert exc_info.value.error_code == "INVALID_JOB_NAME"

    def test_unknown_dependency(self, parser: PipelineParser) -> None:
        with pytest.raises(UnknownDependencyError) as exc_info:
            parser.parse({
                "a": {"steps": ["x"]},
                "b": {"dependsOn": ["a", "ghost"], "steps": ["y"]},
            })
        assert exc_info.value.job == "b"
        assert exc_info.value.field == "dependsOn[1]"
        assert exc_info.value.dependency == "ghost"

    def test_schema_error_has_field_path(self, parser: PipelineParser) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse({"build": {"steps": [{"kind": "run", "name": "compile"}]}})
        assert exc_info.value.error_code == "INVALID_FIELD"
        assert exc_info.value.job == "build"
        assert exc_info.value.field.startswith("steps[0]")

    @pytest.mark.parametrize(
        "deps, field",
        [
            ([{"a": 1}], "dependsOn[0]"),
            (["a", ["a"]], "dependsOn[1]"),
        ],
    )
    def test_malformed_dependency_entry(self, parser: PipelineParser, deps, field) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse({
                "a": {"steps": ["x"]},
                "b": {"dependsOn": deps, "steps": ["y"]},
            })
        assert exc_info.value.error_code == "INVALID_FIELD"
        assert exc_info.value.job == "b"
        assert exc_info.value.field == field

    def test_unknown_job_field(self, parser: PipelineParser) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse({"build": {"steps": ["make"], "image": "node:20"}})
        assert exc_info.value.field == "image"

    def test_invalid_env(self, parser: PipelineParser) -> None:
        with pytest.raises(DefinitionError) as exc_info:
            parser.parse({"build": {"steps": ["make"], "env": ["A=1"]}})
        assert exc_info.value.error_code == "INVALID_ENV"

    @pytest.mark.parametrize("pattern", ["[main", "", 42])
    def test_invalid_trigger_pattern(self, parser: PipelineParser, pattern) -> None:
        with pytest.raises(InvalidTriggerPatternError) as exc_info:
            parser.parse({"deploy": {
                "trigger": {"branches": ["main", pattern]},
                "steps": ["./deploy.sh"],
            }})
        assert exc_info.value.job == "deploy"
        assert exc_info.value.field == "trigger.branches[1]"

    def test_valid_character_class_accepted(self, parser: PipelineParser) -> None:
        graph = parser.parse({"deploy": {
            "trigger": {"branches": ["release/[0-9]*"]},
            "steps": ["./deploy.sh"],
        }})
        assert graph.jobs["deploy"].trigger.branches == ["release/[0-9]*"]


# =============================================================================
# Tests: Cycles
# =============================================================================
class TestCycles:

    def test_self_dependency(self, parser: PipelineParser) -> None:
        with pytest.raises(CyclicGraphError) as exc_info:
            parser.parse({"a": {"dependsOn": ["a"], "steps": ["x"]}})
        assert exc_info.value.cycle == ["a", "a"]

    def test_three_job_cycle(self, parser: PipelineParser) -> None:
        with pytest.raises(CyclicGraphError) as exc_info:
            parser.parse({
                "root": {"steps": ["x"]},
                "a": {"dependsOn": ["root", "c"], "steps": ["x"]},
                "b": {"dependsOn": ["a"], "steps": ["x"]},
                "c": {"dependsOn": ["b"], "steps": ["x"]},
                "tail": {"dependsOn": ["c"], "steps": ["x"]},
            })
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_randomized_graphs(self) -> None:
        """Acyclic graphs always parse; adding a back edge always fails."""
        rng = random.Random(1234)
        parser = PipelineParser()
        for _ in range(100):
            size = rng.randint(2, 12)
            names = [f"j{i}" for i in range(size)]
            jobs = {}
            for index, name in enumerate(names):
                deps = rng.sample(names[:index], k=rng.randint(0, min(index, 3)))
                jobs[name] = {"dependsOn": deps, "steps": ["true"]}

            graph = parser.parse({"jobs": jobs})
            position = {name: i for i, name in enumerate(graph.topological_order)}
            assert len(position) == size
            for name, job in graph.jobs.items():
                assert all(position[dep] < position[name] for dep in job.depends_on)

            # Reverse an existing path to close a cycle.
            child = rng.choice([name for name in names if jobs[name]["dependsOn"]] or [None])
            if child is None:
                continue
            parent = jobs[child]["dependsOn"][0]
            jobs[parent] = {**jobs[parent], "dependsOn": jobs[parent]["dependsOn"] + [child]}
            with pytest.raises(CyclicGraphError) as exc_info:
                parser.parse({"jobs": jobs})
            cycle = exc_info.value.cycle
            assert cycle[0] == cycle[-1]
            for later, earlier in zip(cycle, cycle[1:]):
                assert earlier in jobs[later]["dependsOn"]


# =============================================================================
# Tests: Artifacts
# =============================================================================
class TestArtifactFlow:

    def test_input_from_transitive_dependency(self, parser: PipelineParser) -> None:
        graph = parser.parse({
            "build": {"outputs": ["bundle"], "steps": [{"upload": "bundle", "path": "dist"}]},
            "test": {"dependsOn": ["build"], "steps": ["x"]},
            "ship": {"dependsOn": ["test"], "inputs": ["bundle"], "steps": ["x"]},
        })
        assert graph.jobs["ship"].inputs == ["bundle"]

    def test_input_from_unrelated_job_rejected(self, parser: PipelineParser) -> None:
        with pytest.raises(UnknownArtifactError) as exc_info:
            parser.parse({
                "build": {"outputs": ["bundle"], "steps": [{"upload": "bundle", "path": "dist"}]},
                "ship": {"inputs": ["bundle"], "steps": ["x"]},
            })
        assert exc_info.value.job == "ship"
        assert exc_info.value.field == "inputs[0]"

    def test_download_of_unknown_artifact_rejected(self, parser: PipelineParser) -> None:
        with pytest.raises(UnknownArtifactError) as exc_info:
            parser.parse({"ship": {"steps": ["x", {"download": "bundle"}]}})
        assert exc_info.value.field == "steps[1].artifact"


# =============================================================================
# Tests: Concurrency Groups
# =============================================================================
class TestConcurrency:

    @pytest.mark.parametrize("limit", [0, -1, "two", True])
    def test_invalid_limit(self, parser: PipelineParser, limit) -> None:
        with pytest.raises(InvalidConcurrencyGroupError) as exc_info:
            parser.parse({"concurrency": {"deploy": limit}, "jobs": {"a": {"steps": ["x"]}}})
        assert exc_info.value.field == "concurrency.deploy"

    def test_invalid_group_name_on_job(self, parser: PipelineParser) -> None:
        with pytest.raises(InvalidConcurrencyGroupError) as exc_info:
            parser.parse({"a": {"concurrencyGroup": "two words", "steps": ["x"]}})
        assert exc_info.value.job == "a"

    def test_undeclared_group_is_unlimited_by_default(self, parser: PipelineParser) -> None:
        graph = parser.parse({"a": {"concurrencyGroup": "deploy", "steps": ["x"]}})
        assert graph.group_limit("deploy") is None

    def test_default_group_limit_from_config(self) -> None:
        parser = PipelineParser(SchedulerConfig(default_group_limit=2))
        graph = parser.parse({
            "concurrency": {"prod": 1},
            "jobs": {
                "a": {"concurrencyGroup": "staging", "steps": ["x"]},
                "b": {"concurrencyGroup": "prod", "steps": ["x"]},
            },
        })
        assert graph.concurrency_limits == {"prod": 1, "staging": 2}

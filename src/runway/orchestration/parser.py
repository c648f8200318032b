"""
runway.orchestration.parser - Pipeline Definition Parser
==========================================================

Turns a declarative pipeline document into a validated, frozen
PipelineGraph. Every check happens here, before anything is dispatched:
a document that parses is a graph the scheduler can always run.

Accepted Document Shapes:
    Full document:
        name: site
        env: {NODE_ENV: production}
        concurrency: {deploy: 1}
        jobs:
          build: {steps: [...]}
          deploy: {dependsOn: [build], concurrencyGroup: deploy, steps: [...]}

    Bare mapping of jobs (no ``jobs`` key):
        build: {steps: [...]}
        deploy: {dependsOn: [build], steps: [...]}

    ``jobs`` may also be a list of job specs, each carrying ``name``.

Step Shorthands:
    - "make test"                      → run step
    - {run: "make test", name: test}   → run step
    - {upload: site, path: public/}    → upload_artifact step
    - {download: site, path: public/}  → download_artifact step
    - {gate: quality}                  → gate step
    - {kind: run, command: ...}        → explicit form

Validation Pipeline:
    1. Document structure (mapping, jobs present, top-level keys)
    2. Per job: name, trigger patterns, concurrency group, schema (pydantic)
    3. Duplicate job names
    4. Dependency references resolve
    5. Acyclicity (Kahn's algorithm, then a DFS to report one cycle)
    6. Artifact inputs are produced by a transitive dependency
    7. Concurrency limits

Usage:
    >>> parser = PipelineParser()
    >>> graph = parser.parse_yaml(Path("pipeline.yaml").read_text())
    >>> graph.topological_order
    ('build', 'test', 'deploy')
"""

from __future__ import annotations

import re
from collections import deque
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional, Union

import structlog
import yaml
from pydantic import ValidationError

from runway.core.config import SchedulerConfig
from runway.core.enums import StepKind
from runway.core.exceptions import (
    CyclicGraphError,
    DefinitionError,
    DuplicateJobNameError,
    InvalidConcurrencyGroupError,
    InvalidTriggerPatternError,
    UnknownArtifactError,
    UnknownDependencyError,
)
from runway.core.models import JobDefinition, PipelineGraph


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")
_DOCUMENT_KEYS = frozenset({"name", "env", "concurrency", "jobs"})
_PATTERN_FIELDS = (
    ("branches", "branches"),
    ("paths", "paths"),
    ("pathsIgnore", "pathsIgnore"),
    ("paths_ignore", "pathsIgnore"),
)
_STEP_SHORTHANDS = (
    ("run", StepKind.RUN, "command"),
    ("upload", StepKind.UPLOAD_ARTIFACT, "artifact"),
    ("download", StepKind.DOWNLOAD_ARTIFACT, "artifact"),
)


# =============================================================================
# YAML Loading
# =============================================================================
# PyYAML's SafeLoader silently keeps the last of two equal mapping keys.
# For a pipeline that would hide a duplicated job, so the strict loader
# rejects duplicate keys anywhere in the document.
# =============================================================================
class _DuplicateKeyError(yaml.YAMLError):
    def __init__(self, key: Any, line: int) -> None:
        super().__init__(f"duplicate key {key!r} on line {line}")
        self.key = key
        self.line = line


class _StrictLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict:
        self.flatten_mapping(node)
        seen: set[Any] = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue
            if duplicate:
                raise _DuplicateKeyError(key, key_node.start_mark.line + 1)
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _jobs_node(root: Optional[yaml.Node]) -> Optional[yaml.MappingNode]:
    """The YAML node holding the job mapping (full or bare document)."""
    if not isinstance(root, yaml.MappingNode):
        return None
    for key_node, value_node in root.value:
        if isinstance(key_node, yaml.ScalarNode) and key_node.value == "jobs":
            return value_node if isinstance(value_node, yaml.MappingNode) else None
    return root


# =============================================================================
# Helpers
# =============================================================================
def _loc_to_path(loc: tuple[Union[int, str], ...]) -> str:
    """Render a pydantic error location as ``steps[0].command``."""
    path = ""
    for item in loc:
        if isinstance(item, int):
            path += f"[{item}]"
        else:
            path += f".{item}" if path else str(item)
    return path


def _pattern_problem(pattern: Any) -> Optional[str]:
    """Describe what is wrong with a glob pattern, or None if it is fine."""
    if not isinstance(pattern, str):
        return "must be a string"
    if not pattern.strip():
        return "must not be empty"
    if any(char in pattern for char in "\x00\n\r"):
        return "must not contain NUL or newline characters"

    i, n = 0, len(pattern)
    while i < n:
        if pattern[i] != "[":
            i += 1
            continue
        j = i + 1
        if j < n and pattern[j] == "!":
            j += 1
        if j < n and pattern[j] == "]":
            j += 1
        while j < n and pattern[j] != "]":
            j += 1
        if j >= n:
            return "has an unterminated '[' character class"
        i = j + 1
    return None


def _as_list(value: Any) -> Any:
    """Allow a single string wherever a list of strings is expected."""
    return [value] if isinstance(value, str) else value


def _normalize_env(raw: Any, job: Optional[str], field: str) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise DefinitionError(
            message=f"'{field}' must be a mapping of variable names to values",
            job=job,
            field=field,
            error_code="INVALID_ENV",
        )
    env: dict[str, str] = {}
    for key, value in raw.items():
        if value is None:
            env[str(key)] = ""
        elif isinstance(value, bool):
            env[str(key)] = "true" if value else "false"
        else:
            env[str(key)] = str(value)
    return env


# =============================================================================
# Pipeline Parser
# =============================================================================
class PipelineParser:
    """Validates pipeline documents and builds PipelineGraphs.

    The parser is stateless apart from its configuration; one instance can
    parse any number of documents.

    Attributes:
        _default_group_limit: Limit applied to concurrency groups that jobs
            use without the document declaring one (None = unlimited).
    """

    def __init__(self, config: Optional[SchedulerConfig] = None) -> None:
        config = config or SchedulerConfig()
        self._default_group_limit = config.default_group_limit
        self._logger = logger.bind(component="pipeline_parser")

    # =========================================================================
    # Entry points
    # =========================================================================

    def parse_file(self, path: Union[str, Path]) -> PipelineGraph:
        """Parse a YAML pipeline file. The file stem is the default name.

        Raises:
            FileNotFoundError: If the file does not exist.
            DefinitionError: If the document is invalid.
        """
        pipeline_path = Path(path)
        if not pipeline_path.exists():
            raise FileNotFoundError(f"Pipeline file not found: {path}")
        return self.parse_yaml(pipeline_path.read_text(), name=pipeline_path.stem)

    def parse_yaml(self, text: str, name: Optional[str] = None) -> PipelineGraph:
        """Parse YAML text. Duplicate job names are reported, not merged."""
        loader = _StrictLoader(text)
        try:
            root = loader.get_single_node()
            jobs_node = _jobs_node(root)
            if jobs_node is not None:
                self._check_duplicate_job_keys(jobs_node)
            document = loader.construct_document(root) if root is not None else None
        except _DuplicateKeyError as e:
            raise DefinitionError(
                message=f"Invalid pipeline YAML: {e}",
                error_code="DUPLICATE_KEY",
                details={"key": str(e.key), "line": e.line},
            ) from e
        except yaml.YAMLError as e:
            raise DefinitionError(
                message=f"Invalid pipeline YAML: {e}",
                error_code="INVALID_YAML",
            ) from e
        finally:
            loader.dispose()

        return self.parse(document, name=name)

    def parse(self, document: Any, name: Optional[str] = None) -> PipelineGraph:
        """Validate ``document`` and build the PipelineGraph.

        Args:
            document: Full pipeline document or bare mapping of jobs.
            name: Pipeline name used when the document does not set one.

        Raises:
            DefinitionError: (or a subclass) describing the first problem
                found, with the offending job and field.
        """
        if document is None:
            raise DefinitionError(message="Pipeline document is empty", error_code="EMPTY_PIPELINE")
        if not isinstance(document, Mapping):
            raise DefinitionError(
                message="Pipeline document must be a mapping",
                error_code="INVALID_DOCUMENT",
                details={"type": type(document).__name__},
            )

        if "jobs" in document:
            unknown = sorted(str(key) for key in document if key not in _DOCUMENT_KEYS)
            if unknown:
                raise DefinitionError(
                    message=f"Unknown top-level key(s): {', '.join(unknown)}",
                    field=unknown[0],
                    error_code="UNKNOWN_FIELD",
                )
            pipeline_name = document.get("name") or name or "pipeline"
            env = _normalize_env(document.get("env"), None, "env")
            declared_limits = self._parse_concurrency(document.get("concurrency"))
            raw_jobs = document["jobs"]
        else:
            pipeline_name = name or "pipeline"
            env = {}
            declared_limits = {}
            raw_jobs = document

        if not isinstance(pipeline_name, str):
            raise DefinitionError(
                message="Pipeline name must be a string", field="name", error_code="INVALID_FIELD",
            )

        jobs = self._parse_jobs(raw_jobs)
        self._check_dependencies(jobs)
        order = self._topological_order(jobs)
        self._check_artifacts(jobs, order)
        limits = self._concurrency_limits(jobs, declared_limits)

        dependents: dict[str, list[str]] = {job_name: [] for job_name in jobs}
        for job in jobs.values():
            for dependency in job.depends_on:
                dependents[dependency].append(job.name)

        graph = PipelineGraph(
            name=pipeline_name,
            jobs=jobs,
            dependents={key: tuple(value) for key, value in dependents.items()},
            topological_order=tuple(order),
            concurrency_limits=limits,
            env=env,
        )
        self._logger.info(
            "pipeline_parsed",
            pipeline=pipeline_name,
            jobs=len(jobs),
            concurrency_groups=len(limits),
        )
        return graph

    # =========================================================================
    # Structure
    # =========================================================================

    @staticmethod
    def _check_duplicate_job_keys(jobs_node: yaml.MappingNode) -> None:
        seen: set[str] = set()
        for key_node, _ in jobs_node.value:
            if not isinstance(key_node, yaml.ScalarNode):
                continue
            if key_node.value in seen:
                raise DuplicateJobNameError(
                    message=(
                        f"Duplicate job name '{key_node.value}' "
                        f"(line {key_node.start_mark.line + 1})"
                    ),
                    job=key_node.value,
                )
            seen.add(key_node.value)

    def _parse_jobs(self, raw_jobs: Any) -> dict[str, JobDefinition]:
        entries: list[tuple[str, Any]] = []
        if isinstance(raw_jobs, Mapping):
            for job_name, spec in raw_jobs.items():
                spec = {} if spec is None else spec
                if isinstance(spec, Mapping) and "name" in spec and spec["name"] != job_name:
                    raise DefinitionError(
                        message=(
                            f"Job '{job_name}' declares a different name '{spec['name']}'"
                        ),
                        job=str(job_name),
                        field="name",
                        error_code="INVALID_JOB_NAME",
                    )
                entries.append((job_name, spec))
        elif isinstance(raw_jobs, list):
            for index, spec in enumerate(raw_jobs):
                if not isinstance(spec, Mapping) or "name" not in spec:
                    raise DefinitionError(
                        message=f"Job at position {index} must be a mapping with a 'name'",
                        field=f"jobs[{index}].name",
                        error_code="MISSING_JOB_NAME",
                    )
                entries.append((spec["name"], spec))
        else:
            raise DefinitionError(
                message="'jobs' must be a mapping or a list of jobs",
                field="jobs",
                error_code="INVALID_DOCUMENT",
            )

        if not entries:
            raise DefinitionError(
                message="Pipeline defines no jobs", field="jobs", error_code="NO_JOBS",
            )

        jobs: dict[str, JobDefinition] = {}
        for job_name, spec in entries:
            if not isinstance(job_name, str) or not _NAME_PATTERN.match(job_name):
                raise DefinitionError(
                    message=(
                        f"Invalid job name {job_name!r}: use letters, digits, "
                        f"'_', '-' and '.', starting with a letter or '_'"
                    ),
                    job=str(job_name),
                    field="name",
                    error_code="INVALID_JOB_NAME",
                )
            if job_name in jobs:
                raise DuplicateJobNameError(
                    message=f"Duplicate job name '{job_name}'", job=job_name,
                )
            jobs[job_name] = self._parse_job(job_name, spec)
        return jobs

    # =========================================================================
    # Single job
    # =========================================================================

    def _parse_job(self, job_name: str, spec: Any) -> JobDefinition:
        if not isinstance(spec, Mapping):
            raise DefinitionError(
                message=f"Job '{job_name}' must be a mapping",
                job=job_name,
                error_code="INVALID_JOB",
            )

        data = {key: value for key, value in spec.items() if key != "name"}
        data["name"] = job_name

        if "env" in data:
            data["env"] = _normalize_env(data["env"], job_name, "env")
        for key in ("dependsOn", "depends_on"):
            if key in data:
                deps = _as_list(data[key]) or []
                if isinstance(deps, list) and all(isinstance(dep, str) for dep in deps):
                    # Duplicate edges collapse to one. Anything else is left
                    # for schema validation to report with its index.
                    deps = list(dict.fromkeys(deps))
                data[key] = deps
        for key in ("inputs", "outputs"):
            if key in data:
                data[key] = _as_list(data[key])
        if "trigger" in data:
            data["trigger"] = self._normalize_trigger(job_name, data["trigger"])
        if "steps" in data:
            data["steps"] = self._normalize_steps(job_name, data["steps"])

        group = data.get("concurrencyGroup", data.get("concurrency_group"))
        if group is not None and (not isinstance(group, str) or not _NAME_PATTERN.match(group)):
            raise InvalidConcurrencyGroupError(
                message=f"Job '{job_name}' has an invalid concurrency group {group!r}",
                group=group,
                job=job_name,
            )

        try:
            return JobDefinition.model_validate(data)
        except ValidationError as e:
            first = e.errors(include_url=False)[0]
            field = _loc_to_path(tuple(first["loc"]))
            raise DefinitionError(
                message=f"Job '{job_name}': invalid '{field}': {first['msg']}",
                job=job_name,
                field=field,
                error_code="INVALID_FIELD",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    def _normalize_trigger(self, job_name: str, raw: Any) -> Any:
        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            return raw  # schema validation reports it with the field path

        trigger = dict(raw)
        if "events" in trigger:
            trigger["events"] = _as_list(trigger["events"])
        for key, field_name in _PATTERN_FIELDS:
            if key not in trigger:
                continue
            patterns = _as_list(trigger[key])
            trigger[key] = patterns
            if not isinstance(patterns, list):
                raise InvalidTriggerPatternError(
                    message=f"Job '{job_name}': trigger.{field_name} must be a list of patterns",
                    job=job_name,
                    field=f"trigger.{field_name}",
                    pattern=patterns,
                )
            for index, pattern in enumerate(patterns):
                problem = _pattern_problem(pattern)
                if problem:
                    raise InvalidTriggerPatternError(
                        message=(
                            f"Job '{job_name}': trigger pattern {pattern!r} {problem}"
                        ),
                        job=job_name,
                        field=f"trigger.{field_name}[{index}]",
                        pattern=pattern,
                    )
        return trigger

    def _normalize_steps(self, job_name: str, raw: Any) -> Any:
        if not isinstance(raw, list):
            return raw

        steps: list[Any] = []
        for index, step in enumerate(raw):
            if isinstance(step, str):
                steps.append({"name": f"step-{index + 1}", "kind": StepKind.RUN, "command": step})
                continue
            if not isinstance(step, Mapping):
                steps.append(step)
                continue

            data = dict(step)
            if "env" in data:
                data["env"] = _normalize_env(data["env"], job_name, f"steps[{index}].env")
            if "kind" not in data:
                for shorthand, kind, target in _STEP_SHORTHANDS:
                    if shorthand in data:
                        data["kind"] = kind
                        data[target] = data.pop(shorthand)
                        if kind != StepKind.RUN:
                            data.setdefault("name", f"{shorthand}-{data[target]}")
                        break
                else:
                    if "gate" in data:
                        data["kind"] = StepKind.GATE
                        data.setdefault("name", f"gate-{data['gate']}")
                    elif "command" in data:
                        data["kind"] = StepKind.RUN
            data.setdefault("name", f"step-{index + 1}")
            steps.append(data)
        return steps

    # =========================================================================
    # Graph checks
    # =========================================================================

    @staticmethod
    def _check_dependencies(jobs: dict[str, JobDefinition]) -> None:
        for job in jobs.values():
            for index, dependency in enumerate(job.depends_on):
                if dependency not in jobs:
                    raise UnknownDependencyError(
                        message=(
                            f"Job '{job.name}' depends on unknown job '{dependency}'. "
                            f"Known jobs: {sorted(jobs)}"
                        ),
                        job=job.name,
                        field=f"dependsOn[{index}]",
                        dependency=dependency,
                    )

    @staticmethod
    def _topological_order(jobs: dict[str, JobDefinition]) -> list[str]:
        """Kahn's algorithm, ties broken by document order."""
        in_degree = {name: len(job.depends_on) for name, job in jobs.items()}
        children: dict[str, list[str]] = {name: [] for name in jobs}
        for job in jobs.values():
            for dependency in job.depends_on:
                children[dependency].append(job.name)

        queue = deque(name for name, degree in in_degree.items() if degree == 0)
        order: list[str] = []
        while queue:
            name = queue.popleft()
            order.append(name)
            for child in children[name]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(order) != len(jobs):
            stuck = [name for name in jobs if in_degree[name] > 0]
            cycle = PipelineParser._find_cycle(jobs, stuck)
            raise CyclicGraphError(
                message=f"Dependency cycle: {' -> '.join(cycle)}",
                cycle=cycle,
            )
        return order

    @staticmethod
    def _find_cycle(jobs: dict[str, JobDefinition], stuck: list[str]) -> list[str]:
        """One concrete cycle among the jobs Kahn's algorithm could not order.

        Returned in dependency direction with the first job repeated at the
        end: ["a", "b", "a"] means a depends on b and b depends on a.
        """
        stuck_set = set(stuck)
        visited: set[str] = set()

        for start in stuck:
            if start in visited:
                continue
            path: list[str] = []
            on_path: dict[str, int] = {}
            stack: list[tuple[str, int]] = [(start, 0)]
            while stack:
                node, edge_index = stack.pop()
                if edge_index == 0:
                    on_path[node] = len(path)
                    path.append(node)
                    visited.add(node)
                deps = [d for d in jobs[node].depends_on if d in stuck_set]
                if edge_index < len(deps):
                    stack.append((node, edge_index + 1))
                    nxt = deps[edge_index]
                    if nxt in on_path:
                        return path[on_path[nxt]:] + [nxt]
                    if nxt not in visited:
                        stack.append((nxt, 0))
                else:
                    path.pop()
                    del on_path[node]
        # Every stuck node lies on or downstream of a cycle, so the DFS
        # above always returns.
        return list(stuck)

    @staticmethod
    def _check_artifacts(jobs: dict[str, JobDefinition], order: list[str]) -> None:
        """Inputs and download steps must name an upstream output."""
        ancestors: dict[str, set[str]] = {}
        for name in order:
            upstream: set[str] = set()
            for dependency in jobs[name].depends_on:
                upstream.add(dependency)
                upstream |= ancestors[dependency]
            ancestors[name] = upstream

        for name in order:
            job = jobs[name]
            available = {
                output
                for ancestor in ancestors[name]
                for output in jobs[ancestor].outputs
            } | {
                step.artifact
                for ancestor in ancestors[name]
                for step in jobs[ancestor].steps
                if step.kind == StepKind.UPLOAD_ARTIFACT
            }
            for index, artifact in enumerate(job.inputs):
                if artifact not in available:
                    raise UnknownArtifactError(
                        message=(
                            f"Job '{name}' consumes artifact '{artifact}' that no "
                            f"upstream job produces"
                        ),
                        job=name,
                        field=f"inputs[{index}]",
                        artifact=artifact,
                    )
            for index, step in enumerate(job.steps):
                if step.kind == StepKind.DOWNLOAD_ARTIFACT and step.artifact not in available:
                    raise UnknownArtifactError(
                        message=(
                            f"Job '{name}' downloads artifact '{step.artifact}' that no "
                            f"upstream job produces"
                        ),
                        job=name,
                        field=f"steps[{index}].artifact",
                        artifact=step.artifact,
                    )

    # =========================================================================
    # Concurrency
    # =========================================================================

    @staticmethod
    def _parse_concurrency(raw: Any) -> dict[str, int]:
        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            raise InvalidConcurrencyGroupError(
                message="'concurrency' must map group names to limits",
                group=None,
                field="concurrency",
            )
        limits: dict[str, int] = {}
        for group, limit in raw.items():
            if not isinstance(group, str) or not _NAME_PATTERN.match(group):
                raise InvalidConcurrencyGroupError(
                    message=f"Invalid concurrency group name {group!r}",
                    group=group,
                    field=f"concurrency.{group}",
                )
            if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
                raise InvalidConcurrencyGroupError(
                    message=(
                        f"Concurrency limit for group '{group}' must be a positive "
                        f"integer, got {limit!r}"
                    ),
                    group=group,
                    field=f"concurrency.{group}",
                )
            limits[group] = limit
        return limits

    def _concurrency_limits(
        self, jobs: dict[str, JobDefinition], declared: dict[str, int],
    ) -> dict[str, int]:
        limits = dict(declared)
        if self._default_group_limit is not None:
            for job in jobs.values():
                if job.concurrency_group and job.concurrency_group not in limits:
                    limits[job.concurrency_group] = self._default_group_limit
        return limits

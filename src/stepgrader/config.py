from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Literal

import yaml
from expandvars import ExpandvarsException, expandvars
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from stepgrader.capture import is_memory_ref
from stepgrader.errors import ErrorCode, SuiteLoadError, UnsupportedActionError


class Action(str, Enum):
    CLIENT_START = "ClientStart"
    SERVER_START = "ServerStart"
    CLIENT_CLOSE = "ClientClose"
    SERVER_CLOSE = "ServerClose"
    KILL_ALL = "KillAll"
    RUN_CLIENT = "RunClient"
    RUN_SERVER = "RunServer"
    WAIT = "Wait"
    HTTP_REQUEST = "HttpRequest"
    ASSERT_TEXT = "AssertText"
    CAPTURE_FILE = "CaptureFile"
    COMPARE_FILE = "CompareFile"
    COMPARE_TEXT = "CompareText"
    COMPARE_JSON = "CompareJson"
    COMPARE_CSV = "CompareCsv"
    TCP_RELAY = "TcpRelay"
    CLIENT_INPUT = "ClientInput"

    @classmethod
    def parse(cls, tag: str) -> Action:
        """Resolve an action tag. Tags are case-sensitive."""
        try:
            return cls(tag)
        except ValueError:
            raise UnsupportedActionError(f"Unsupported action: {tag!r}") from None

    @property
    def is_compare(self) -> bool:
        return self in COMPARE_ACTIONS

    @property
    def is_scored(self) -> bool:
        return self in COMPARE_ACTIONS or self is Action.ASSERT_TEXT


COMPARE_ACTIONS = frozenset(
    {
        Action.COMPARE_FILE,
        Action.COMPARE_TEXT,
        Action.COMPARE_JSON,
        Action.COMPARE_CSV,
    }
)


class Stage(str, Enum):
    SETUP = "SETUP"
    INPUT = "INPUT"
    VERIFY = "VERIFY"
    CLEANUP = "CLEANUP"


class ValidationKind(str, Enum):
    CLIENT_OUTPUT = "CLIENT_OUTPUT"
    SERVER_OUTPUT = "SERVER_OUTPUT"
    DATA_REQUEST = "DATA_REQUEST"
    DATA_RESPONSE = "DATA_RESPONSE"
    HTTP_METHOD = "HTTP_METHOD"
    STATUS_CODE = "STATUS_CODE"
    BYTE_SIZE = "BYTE_SIZE"
    DATA_TYPE = "DATA_TYPE"


CLIENT_SHEET_PREFIX = "OC"
SERVER_SHEET_PREFIX = "OS"

# Id kind tokens that select an HTTP metadata check instead of a content check.
METADATA_KINDS = {
    "METHOD": ValidationKind.HTTP_METHOD,
    "STATUS": ValidationKind.STATUS_CODE,
    "SIZE": ValidationKind.BYTE_SIZE,
    "TYPE": ValidationKind.DATA_TYPE,
}


def _id_parts(step_id: str) -> list[str]:
    return [p.strip() for p in step_id.split("-")]


class Step(BaseModel):
    """One scripted grading instruction.

    ``id`` follows ``<SheetPrefix>-<Kind>-<StageOrdinal>`` (e.g. ``OC-CMP-2``).
    ``action`` is kept as the raw tag so unknown actions reach the executor and
    are reported there instead of failing the whole suite.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    action: str
    stage: Stage | None = None
    target: str | None = None
    value: str | None = None
    question_code: str = ""
    http_method: str | None = None
    status_code: str | None = None
    byte_size: int | None = None
    data_type: str | None = None
    # first CSV row is a header compared by position; off for headerless files
    csv_header: bool = True

    @field_validator("stage", mode="before")
    @classmethod
    def normalize_stage(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().upper()
            return v or None
        return v

    @field_validator("target", "value", "status_code", mode="before")
    @classmethod
    def coerce_scalars(cls, v: Any) -> Any:
        # YAML turns `value: 500` or `status_code: 200` into ints
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @property
    def sheet_prefix(self) -> str:
        return _id_parts(self.id)[0].upper()

    @property
    def stage_ordinal(self) -> int | None:
        parts = _id_parts(self.id)
        if len(parts) > 1 and parts[-1].isdigit():
            return int(parts[-1])
        return None

    @property
    def kind(self) -> str:
        parts = _id_parts(self.id)[1:]
        if parts and self.stage_ordinal is not None:
            parts = parts[:-1]
        return "-".join(parts).upper()

    @property
    def stage_label(self) -> str:
        if self.stage is not None:
            return self.stage.value
        ordinal = self.stage_ordinal
        return str(ordinal) if ordinal is not None else "0"

    @property
    def validation_kind(self) -> ValidationKind | None:
        tokens = set(self.kind.split("-"))
        is_client_sheet = self.sheet_prefix == CLIENT_SHEET_PREFIX
        for token, kind in METADATA_KINDS.items():
            if token in tokens:
                return kind
        if "DATA" in tokens:
            return (
                ValidationKind.DATA_RESPONSE
                if is_client_sheet
                else ValidationKind.DATA_REQUEST
            )
        if "OUT" in tokens:
            return (
                ValidationKind.CLIENT_OUTPUT
                if is_client_sheet
                else ValidationKind.SERVER_OUTPUT
            )
        if "REQ" in tokens:
            return ValidationKind.DATA_REQUEST
        return None


class GradingMode(str, Enum):
    DEFAULT = "default"
    CLIENT = "client"
    SERVER = "server"
    CONSOLE = "console"
    HTTP = "http"


class GradingConfig(BaseModel):
    """Immutable set of validation toggles consulted before every step."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    grade_output_clients_sheet: bool = True
    grade_output_servers_sheet: bool = True
    validate_client_output: bool = True
    validate_server_output: bool = True
    validate_data_response: bool = True
    validate_data_request: bool = True
    validate_http_method: bool = True
    validate_status_code: bool = True
    validate_byte_size: bool = False
    validate_data_type: bool = True

    @classmethod
    def preset(cls, mode: GradingMode | str) -> GradingConfig:
        return cls(**_PRESETS[GradingMode(mode)])

    def is_enabled(self, kind: ValidationKind | str | None) -> bool:
        if kind is None:
            return True
        if not isinstance(kind, ValidationKind):
            try:
                kind = ValidationKind(str(kind).strip().upper())
            except ValueError:
                return True
        return getattr(self, _TOGGLES[kind])

    def should_grade_step(self, step_id: str | None) -> bool:
        if not step_id:
            return True
        upper = step_id.upper()
        if upper.startswith(f"{CLIENT_SHEET_PREFIX}-"):
            return self.grade_output_clients_sheet
        if upper.startswith(f"{SERVER_SHEET_PREFIX}-"):
            return self.grade_output_servers_sheet
        return True


_TOGGLES = {
    ValidationKind.CLIENT_OUTPUT: "validate_client_output",
    ValidationKind.SERVER_OUTPUT: "validate_server_output",
    ValidationKind.DATA_RESPONSE: "validate_data_response",
    ValidationKind.DATA_REQUEST: "validate_data_request",
    ValidationKind.HTTP_METHOD: "validate_http_method",
    ValidationKind.STATUS_CODE: "validate_status_code",
    ValidationKind.BYTE_SIZE: "validate_byte_size",
    ValidationKind.DATA_TYPE: "validate_data_type",
}

_PRESETS: dict[GradingMode, dict[str, bool]] = {
    GradingMode.DEFAULT: {},
    GradingMode.CLIENT: {
        "grade_output_servers_sheet": False,
        "validate_server_output": False,
        "validate_data_request": False,
    },
    GradingMode.SERVER: {
        "grade_output_clients_sheet": False,
        "validate_client_output": False,
        "validate_data_response": False,
        "validate_status_code": False,
    },
    GradingMode.CONSOLE: {
        "validate_data_response": False,
        "validate_data_request": False,
        "validate_http_method": False,
        "validate_status_code": False,
        "validate_data_type": False,
    },
    GradingMode.HTTP: {
        "validate_client_output": False,
        "validate_server_output": False,
    },
}


class ExecuteSuiteArgs(BaseModel):
    """Per-run parameters shared by every step of a run."""

    model_config = ConfigDict(extra="forbid")

    protocol: Literal["HTTP", "TCP"] = "HTTP"
    stage_timeout_seconds: float = Field(default=10, ge=1)
    result_root: Path = Path("results")
    client_exe_path: str | None = None
    server_exe_path: str | None = None
    host: str = "127.0.0.1"
    server_port: int = 5001
    proxy_port: int = 5000
    readiness_probe: Literal["tcp", "http"] = "tcp"
    health_path: str = "/healthz"
    server_ready_timeout: float = 5.0
    ready_poll_interval: float = 0.1
    stage_settle_seconds: float = 0.5
    use_middleware: bool = True

    @field_validator("protocol", mode="before")
    @classmethod
    def normalize_protocol(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @property
    def use_http(self) -> bool:
        return self.protocol == "HTTP"


class GradingSection(BaseModel):
    model_config = ConfigDict(extra="forbid")
    mode: GradingMode = GradingMode.DEFAULT
    overrides: dict[str, bool] = {}

    def build(self) -> GradingConfig:
        base = GradingConfig.preset(self.mode).model_dump()
        unknown = set(self.overrides) - set(base)
        if unknown:
            raise ValueError(f"Unknown grading toggles: {', '.join(sorted(unknown))}")
        return GradingConfig(**{**base, **self.overrides})


class CaseConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str
    mark: float = 1.0
    steps: list[Step]

    @field_validator("steps")
    @classmethod
    def steps_must_not_be_empty(cls, v: list[Step]) -> list[Step]:
        if not v:
            raise ValueError("steps must not be empty")
        return v


class SuiteConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    protocol: Literal["HTTP", "TCP"] = "HTTP"
    stage_timeout_seconds: float = Field(default=10, ge=1)
    client: str | None = None
    server: str | None = None
    server_port: int = 5001
    proxy_port: int = 5000
    readiness_probe: Literal["tcp", "http"] = "tcp"
    health_path: str = "/healthz"
    grading: GradingSection = GradingSection()
    cases: list[CaseConfig]

    @field_validator("protocol", mode="before")
    @classmethod
    def normalize_protocol(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("cases")
    @classmethod
    def no_duplicate_case_names(cls, v: list[CaseConfig]) -> list[CaseConfig]:
        seen: set[str] = set()
        for case in v:
            if case.name in seen:
                raise ValueError(f"Duplicate case name '{case.name}'")
            seen.add(case.name)
        return v

    @model_validator(mode="after")
    def cases_must_not_be_empty(self) -> SuiteConfig:
        if not self.cases:
            raise ValueError("cases must not be empty")
        return self

    def to_args(self, result_root: Path, **overrides: Any) -> ExecuteSuiteArgs:
        fields: dict[str, Any] = {
            "protocol": self.protocol,
            "stage_timeout_seconds": self.stage_timeout_seconds,
            "result_root": result_root,
            "client_exe_path": self.client,
            "server_exe_path": self.server,
            "server_port": self.server_port,
            "proxy_port": self.proxy_port,
            "readiness_probe": self.readiness_probe,
            "health_path": self.health_path,
        }
        fields.update(overrides)
        return ExecuteSuiteArgs(**fields)


def _resolve_path(value: str | None, base_dir: Path) -> str | None:
    if not value:
        return value
    expanded = expandvars(value, nounset=True)
    path = Path(expanded)
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return str(path)


def load_suite(path: Path) -> SuiteConfig:
    """Load and validate a suite from a YAML file.

    Executable and expected-file paths may use ``${VAR}`` references and are
    resolved relative to the suite file location.
    """
    suite_dir = path.parent.resolve()

    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise SuiteLoadError(f"Cannot read suite {path}: {e}") from e

    if not isinstance(raw, dict):
        raise SuiteLoadError(f"Suite {path} is empty", ErrorCode.HEADER_MISSING)
    if not raw.get("cases"):
        raise SuiteLoadError(f"Suite {path} defines no cases", ErrorCode.NO_TEST_CASES)

    try:
        suite = SuiteConfig(**raw)
    except ValidationError as e:
        raise SuiteLoadError(f"Invalid suite {path}:\n{e}", ErrorCode.STEP_PARSE_ERROR) from e

    try:
        updates = {
            "client": _resolve_path(suite.client, suite_dir),
            "server": _resolve_path(suite.server, suite_dir),
        }
        cases = [
            case.model_copy(
                update={
                    "steps": [_resolve_step_paths(step, suite_dir) for step in case.steps]
                }
            )
            for case in suite.cases
        ]
    except ExpandvarsException as e:
        raise SuiteLoadError(f"Cannot resolve paths in suite {path}: {e}") from e

    return suite.model_copy(update={**updates, "cases": cases})


def _resolve_step_paths(step: Step, suite_dir: Path) -> Step:
    """Resolve the expected-side path of compare steps against the suite folder."""
    try:
        action = Action.parse(step.action)
    except UnsupportedActionError:
        return step
    if not (action.is_compare or action is Action.ASSERT_TEXT):
        return step
    if not step.target or step.target.strip() == "-":
        return step
    if set(step.kind.split("-")) & METADATA_KINDS.keys():
        return step
    if is_memory_ref(step.target):
        return step
    return step.model_copy(update={"target": _resolve_path(step.target, suite_dir)})

import pytest
from pydantic import ValidationError

from stepgrader.config import (
    Action,
    ExecuteSuiteArgs,
    GradingConfig,
    GradingMode,
    Stage,
    Step,
    ValidationKind,
    load_suite,
)
from stepgrader.errors import ErrorCode, SuiteLoadError, UnsupportedActionError


# --- Step ---


def test_step_id_parts():
    step = Step(id="OC-CMP-2", action="CompareText", question_code="Q1")
    assert step.sheet_prefix == "OC"
    assert step.kind == "CMP"
    assert step.stage_ordinal == 2
    assert step.stage_label == "2"


def test_step_stage_field_wins_over_id_suffix():
    step = Step(id="OC-OUT-3", action="CompareText", stage="verify")
    assert step.stage is Stage.VERIFY
    assert step.stage_label == "VERIFY"


def test_step_without_ordinal_uses_default_stage():
    step = Step(id="KILL", action="KillAll")
    assert step.stage_ordinal is None
    assert step.stage_label == "0"
    assert step.kind == ""


def test_step_is_immutable():
    step = Step(id="OC-OUT-1", action="CompareText")
    with pytest.raises(ValidationError):
        step.value = "other"


def test_step_rejects_unknown_stage():
    with pytest.raises(ValidationError):
        Step(id="OC-OUT-1", action="CompareText", stage="LATER")


def test_step_coerces_numeric_values():
    step = Step(id="W-1", action="Wait", value=500, status_code=200)
    assert step.value == "500"
    assert step.status_code == "200"


@pytest.mark.parametrize(
    "step_id, kind",
    [
        ("OC-METHOD-1", ValidationKind.HTTP_METHOD),
        ("OS-METHOD-1", ValidationKind.HTTP_METHOD),
        ("OC-STATUS-1", ValidationKind.STATUS_CODE),
        ("OC-SIZE-2", ValidationKind.BYTE_SIZE),
        ("OC-TYPE-2", ValidationKind.DATA_TYPE),
        ("OC-DATA-1", ValidationKind.DATA_RESPONSE),
        ("OS-DATA-1", ValidationKind.DATA_REQUEST),
        ("OS-REQ-1", ValidationKind.DATA_REQUEST),
        ("OC-OUT-1", ValidationKind.CLIENT_OUTPUT),
        ("OS-OUT-1", ValidationKind.SERVER_OUTPUT),
        ("OC-CMP-2", None),
        ("IC-START-1", None),
    ],
)
def test_validation_kind_from_id(step_id, kind):
    assert Step(id=step_id, action="CompareText").validation_kind == kind


# --- Action ---


def test_action_parse_is_case_sensitive():
    assert Action.parse("CompareText") is Action.COMPARE_TEXT
    with pytest.raises(UnsupportedActionError) as exc_info:
        Action.parse("comparetext")
    assert exc_info.value.code is ErrorCode.UNSUPPORTED_ACTION


def test_action_scoring_flags():
    assert Action.COMPARE_CSV.is_compare
    assert Action.ASSERT_TEXT.is_scored
    assert not Action.ASSERT_TEXT.is_compare
    assert not Action.SERVER_START.is_scored


# --- GradingConfig ---


def test_grading_defaults():
    config = GradingConfig()
    assert config.is_enabled(ValidationKind.CLIENT_OUTPUT)
    assert not config.is_enabled(ValidationKind.BYTE_SIZE)
    assert config.is_enabled(None)
    assert config.is_enabled("something_else")
    assert config.is_enabled("status_code")


def test_should_grade_step_by_sheet_prefix():
    config = GradingConfig(grade_output_clients_sheet=False)
    assert config.should_grade_step("OC-CMP-2") is False
    assert config.should_grade_step("oc-cmp-2") is False
    assert config.should_grade_step("OS-OUT-1") is True
    assert config.should_grade_step("IC-START-1") is True
    assert config.should_grade_step("") is True


def test_grading_config_is_frozen():
    config = GradingConfig()
    with pytest.raises(ValidationError):
        config.validate_byte_size = True


def test_client_preset_skips_server_sheet():
    config = GradingConfig.preset(GradingMode.CLIENT)
    assert config.should_grade_step("OS-OUT-1") is False
    assert config.should_grade_step("OC-OUT-1") is True
    assert not config.is_enabled(ValidationKind.DATA_REQUEST)


def test_console_preset_only_output():
    config = GradingConfig.preset("console")
    assert config.is_enabled(ValidationKind.CLIENT_OUTPUT)
    assert config.is_enabled(ValidationKind.SERVER_OUTPUT)
    assert not config.is_enabled(ValidationKind.HTTP_METHOD)
    assert not config.is_enabled(ValidationKind.DATA_TYPE)


def test_http_preset_disables_console_output():
    config = GradingConfig.preset(GradingMode.HTTP)
    assert not config.is_enabled(ValidationKind.CLIENT_OUTPUT)
    assert config.is_enabled(ValidationKind.STATUS_CODE)


# --- ExecuteSuiteArgs ---


def test_args_defaults_and_protocol_normalization():
    args = ExecuteSuiteArgs(protocol="tcp")
    assert args.protocol == "TCP"
    assert args.use_http is False
    assert args.stage_timeout_seconds == 10
    assert args.server_port == 5001
    assert args.proxy_port == 5000


def test_args_rejects_short_timeout():
    with pytest.raises(ValidationError):
        ExecuteSuiteArgs(stage_timeout_seconds=0)


# --- load_suite ---


def _write_suite(tmp_path, body):
    path = tmp_path / "suite.yaml"
    path.write_text(body)
    return path


def test_load_suite_resolves_relative_paths(tmp_path):
    path = _write_suite(
        tmp_path,
        """
protocol: http
server: ./bin/server.py
cases:
  - name: basic
    mark: 2
    steps:
      - {id: OS-START-1, action: ServerStart, question_code: Q1}
      - {id: OC-OUT-1, action: CompareText, question_code: Q1, target: expected/q1.txt}
      - {id: OC-METHOD-1, action: CompareText, question_code: Q1, target: GET}
""",
    )
    suite = load_suite(path)

    assert suite.protocol == "HTTP"
    assert suite.server == str((tmp_path / "bin" / "server.py").resolve())
    assert suite.client is None
    steps = suite.cases[0].steps
    assert steps[1].target == str((tmp_path / "expected" / "q1.txt").resolve())
    # literal expectations are not paths
    assert steps[2].target == "GET"
    assert suite.cases[0].mark == 2


def test_load_suite_expands_environment_variables(tmp_path, monkeypatch):
    monkeypatch.setenv("SUBMISSION_DIR", str(tmp_path / "sub"))
    path = _write_suite(
        tmp_path,
        """
client: ${SUBMISSION_DIR}/client.py
cases:
  - name: basic
    steps:
      - {id: OC-START-1, action: ClientStart}
""",
    )
    suite = load_suite(path)
    assert suite.client == str(tmp_path / "sub" / "client.py")


def test_load_suite_unset_variable_fails(tmp_path, monkeypatch):
    monkeypatch.delenv("STEPGRADER_UNSET_DIR", raising=False)
    path = _write_suite(
        tmp_path,
        """
client: ${STEPGRADER_UNSET_DIR}/client.py
cases:
  - name: basic
    steps:
      - {id: OC-START-1, action: ClientStart}
""",
    )
    with pytest.raises(SuiteLoadError):
        load_suite(path)


def test_load_suite_without_cases(tmp_path):
    path = _write_suite(tmp_path, "protocol: HTTP\ncases: []\n")
    with pytest.raises(SuiteLoadError) as exc_info:
        load_suite(path)
    assert exc_info.value.code is ErrorCode.NO_TEST_CASES


def test_load_suite_invalid_step(tmp_path):
    path = _write_suite(
        tmp_path,
        """
cases:
  - name: basic
    steps:
      - {id: OC-START-1, action: ClientStart, colour: blue}
""",
    )
    with pytest.raises(SuiteLoadError) as exc_info:
        load_suite(path)
    assert exc_info.value.code is ErrorCode.STEP_PARSE_ERROR


def test_load_suite_keeps_unknown_actions_for_the_executor(tmp_path):
    path = _write_suite(
        tmp_path,
        """
cases:
  - name: basic
    steps:
      - {id: OC-X-1, action: Teleport, target: somewhere}
""",
    )
    suite = load_suite(path)
    assert suite.cases[0].steps[0].action == "Teleport"
    assert suite.cases[0].steps[0].target == "somewhere"


def test_grading_section_overrides(tmp_path):
    path = _write_suite(
        tmp_path,
        """
grading:
  mode: client
  overrides:
    validate_byte_size: true
cases:
  - name: basic
    steps:
      - {id: OC-START-1, action: ClientStart}
""",
    )
    grading = load_suite(path).grading.build()
    assert grading.validate_byte_size is True
    assert grading.grade_output_servers_sheet is False


def test_grading_section_rejects_unknown_toggle(tmp_path):
    path = _write_suite(
        tmp_path,
        """
grading:
  overrides:
    validate_everything: true
cases:
  - name: basic
    steps:
      - {id: OC-START-1, action: ClientStart}
""",
    )
    with pytest.raises(ValueError, match="validate_everything"):
        load_suite(path).grading.build()


def test_missing_file_raises_suite_load_error(tmp_path):
    with pytest.raises(SuiteLoadError):
        load_suite(tmp_path / "nope.yaml")


def test_load_suite_leaves_capture_references_alone(tmp_path):
    path = _write_suite(
        tmp_path,
        """
cases:
  - name: basic
    steps:
      - {id: OC-OUT-1, action: AssertText, target: "memory://clients/Q1/1", value: hi}
""",
    )
    assert load_suite(path).cases[0].steps[0].target == "memory://clients/Q1/1"


def test_to_args_overrides_suite_values(tmp_path):
    path = _write_suite(
        tmp_path,
        """
client: ./client.py
server_port: 6001
cases:
  - name: basic
    steps:
      - {id: OC-START-1, action: ClientStart}
""",
    )
    args = load_suite(path).to_args(tmp_path / "out", client_exe_path="/opt/other.py")
    assert args.client_exe_path == "/opt/other.py"
    assert args.server_port == 6001
    assert args.result_root == tmp_path / "out"


def test_load_suite_keeps_metadata_literals_for_multi_token_kinds(tmp_path):
    path = _write_suite(
        tmp_path,
        """
cases:
  - name: basic
    steps:
      - {id: OC-HTTP-METHOD-1, action: CompareText, target: GET}
      - {id: OC-RESP-STATUS-2, action: CompareText, target: NotFound}
      - {id: OC-HTTP-OUT-2, action: CompareText, target: expected.txt}
""",
    )
    method, status, output = load_suite(path).cases[0].steps
    assert method.target == "GET"
    assert method.validation_kind is ValidationKind.HTTP_METHOD
    assert status.target == "NotFound"
    assert output.target == str((tmp_path / "expected.txt").resolve())

"""
Turn the user's repro values (build command, test command, expected result)
into verification steps, plus the response evaluators those steps use.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from config import ReproConfig, repro_config as default_repro_config

from .verifier import (
    Evaluation,
    HttpResponse,
    LocalProcessStepArgs,
    LogType,
    StepArgs,
)

BUILD_LOG_TEXT_FILTER = "DEBUG-BLINKY:|error|Error|exception|Exception|fail|Fail"

_STATUS_LINE_RE = re.compile(r"HTTP/\S* (\d{3}) ?(.*)")


@dataclass
class ReproValues:
    build_command: str = ""
    test_command: str = ""
    expected_instruction: str = ""
    expected_status: str = ""
    expected_body: str = ""

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "ReproValues":
        return cls(**{k: str(values.get(k) or "") for k in cls.__dataclass_fields__})


def is_subset_of(subset: Any, obj: Any) -> bool:
    """True if every key of subset is in obj with an equal value, recursing into dicts."""
    if not isinstance(subset, dict):
        return subset == obj
    if not isinstance(obj, dict):
        return False
    for key, value in subset.items():
        if key not in obj:
            return False
        other = obj[key]
        if isinstance(value, dict) and isinstance(other, dict):
            if not is_subset_of(value, other):
                return False
        elif value != other:
            return False
    return True


def parse_curl_output(output: str) -> Dict[str, Any]:
    """Split `curl -i` output into status code, headers and body."""
    output = output.strip()
    idx = output.find("HTTP")
    if idx > 0:
        output = output[idx:]
    if idx == -1 or not _STATUS_LINE_RE.match(output):
        return {"status_code": None, "headers": {}, "body": output.strip()}

    normalized = output.replace("\r\n", "\n")
    # skip interim responses such as "HTTP/1.1 100 Continue"
    while True:
        head, sep, rest = normalized.partition("\n\n")
        if sep and rest.startswith("HTTP") and " 100 " in head.split("\n")[0]:
            normalized = rest
            continue
        break

    header_lines = head.strip().split("\n")
    match = _STATUS_LINE_RE.match(header_lines[0])
    headers: Dict[str, str] = {}
    for line in header_lines[1:]:
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip()] = value.strip()
    return {
        "status_code": int(match.group(1)) if match else None,
        "headers": headers,
        "body": rest.strip(),
    }


def _compare_json_responses(actual_status: int, actual_body: Any,
                            expected_status: Optional[int], expected_subset: Any) -> Evaluation:
    status_matched = expected_status is None or actual_status == expected_status
    body_matched = is_subset_of(expected_subset, actual_body)
    if status_matched and body_matched:
        return Evaluation("Test PASS! Response body matches the expected output.", True)

    logs = "Test FAIL!"
    if not status_matched:
        logs += f"\nExpected status code {expected_status}, but got {actual_status}."
    if not body_matched:
        logs += (
            f"\nExpected response body to contain {json.dumps(expected_subset)}, "
            f"but got {json.dumps(actual_body)}."
        )
    return Evaluation(logs, False)


def json_response_evaluator(expected_status: Optional[int], expected_subset: Any) -> Callable[[HttpResponse], Evaluation]:
    """Evaluator for HTTP steps: status must match and the JSON body must contain the subset."""
    def evaluate(response: HttpResponse) -> Evaluation:
        try:
            body = response.json()
        except ValueError as e:
            return Evaluation(f"Test FAIL! Error parsing response body: {e}", False)
        return _compare_json_responses(response.status, body, expected_status, expected_subset)
    return evaluate


def curl_response_evaluator(expected_status: Optional[int], expected_subset: Any) -> Callable[[str], Evaluation]:
    """Evaluator for `curl -i -s` output of a local process step."""
    def evaluate(output: str) -> Evaluation:
        parsed = parse_curl_output(output)
        body_text = parsed["body"]
        try:
            body = json.loads(body_text) if body_text else {}
        except ValueError as e:
            return Evaluation(f"Test FAIL! Error parsing response body: {e}", False)
        return _compare_json_responses(parsed["status_code"] or 0, body, expected_status, expected_subset)
    return evaluate


def instruction_evaluator(instruction: str) -> Callable[[str], Evaluation]:
    """Evaluator that never passes; its logs tell the agent what to check by hand."""
    def evaluate(_output: str) -> Evaluation:
        return Evaluation(instruction, False)
    return evaluate


def _evaluation_instruction(values: ReproValues) -> str:
    if values.expected_status or values.expected_body:
        return (
            f"Verify that the expected status code is {values.expected_status} "
            f"and expected body is {values.expected_body}"
        )
    if values.expected_instruction:
        return (
            "Look at the user's instruction and verify the response manually.\n"
            f"User Instruction: {values.expected_instruction}"
        )
    return "You have to figure out what the expected response should be."


def repro_values_to_steps(values: ReproValues, config: Optional[ReproConfig] = None) -> List[StepArgs]:
    """Build step (e.g. start the server) followed by a test step (e.g. curl it)."""
    config = config or default_repro_config
    steps: List[StepArgs] = []
    build_command = values.build_command.strip()
    test_command = values.test_command.strip()
    if not build_command and not test_command:
        return steps

    if build_command:
        steps.append(LocalProcessStepArgs(
            command=build_command,
            ready_keywords=[config.build_ready_text] if config.build_ready_text else None,
            inactivity_timeout=config.build_inactivity_timeout or None,
            process_timeout=config.build_process_timeout or None,
            log_text_filter=BUILD_LOG_TEXT_FILTER,
            log_type_filters=[LogType.ERROR, LogType.STDERR],
        ))

    if not test_command:
        return steps

    evaluate = instruction_evaluator(_evaluation_instruction(values))
    if test_command.startswith("curl"):
        # headers in the output, no progress meter
        test_command += " -i -s"
        if values.expected_status or values.expected_body:
            try:
                expected_status = int(values.expected_status) if values.expected_status else None
                expected_body = json.loads(values.expected_body or "{}")
            except ValueError as e:
                raise ValueError(f"Invalid expected status or body: {e}") from e
            evaluate = curl_response_evaluator(expected_status, expected_body)

    steps.append(LocalProcessStepArgs(
        command=test_command,
        inactivity_timeout=config.test_inactivity_timeout or None,
        process_timeout=config.test_process_timeout or None,
        evaluate_output=evaluate,
    ))
    return steps

"""Tests for repro values, curl output parsing and response evaluators."""

import pytest

from config import ReproConfig
from tools.repro import (
    BUILD_LOG_TEXT_FILTER,
    ReproValues,
    curl_response_evaluator,
    is_subset_of,
    json_response_evaluator,
    parse_curl_output,
    repro_values_to_steps,
)
from tools.verifier import HttpResponse, LogType

CURL_OUTPUT = (
    "HTTP/1.1 100 Continue\r\n\r\n"
    "HTTP/1.1 404 Not Found\r\n"
    "Content-Type: application/json\r\n"
    "X-Request-Id: abc\r\n"
    "\r\n"
    '{"error": "user not found", "code": 404}'
)


def test_is_subset_of():
    assert is_subset_of({"a": 1}, {"a": 1, "b": 2})
    assert is_subset_of({"a": {"b": 1}}, {"a": {"b": 1, "c": 2}})
    assert not is_subset_of({"a": {"b": 2}}, {"a": {"b": 1}})
    assert not is_subset_of({"missing": 1}, {"a": 1})
    assert is_subset_of({}, {"anything": True})
    assert is_subset_of([1, 2], [1, 2])


def test_parse_curl_output_skips_continue():
    parsed = parse_curl_output(CURL_OUTPUT)
    assert parsed["status_code"] == 404
    assert parsed["headers"] == {"Content-Type": "application/json", "X-Request-Id": "abc"}
    assert parsed["body"] == '{"error": "user not found", "code": 404}'


def test_parse_curl_output_without_headers():
    parsed = parse_curl_output("curl: (7) Failed to connect")
    assert parsed["status_code"] is None
    assert parsed["body"] == "curl: (7) Failed to connect"


def test_curl_evaluator_pass_and_fail():
    passing = curl_response_evaluator(404, {"error": "user not found"})(CURL_OUTPUT)
    assert passing.passed
    assert passing.logs == "Test PASS! Response body matches the expected output."

    failing = curl_response_evaluator(200, {"name": "bob"})(CURL_OUTPUT)
    assert not failing.passed
    assert failing.logs.startswith("Test FAIL!\nExpected status code 200, but got 404.")
    assert 'Expected response body to contain {"name": "bob"}' in failing.logs


def test_curl_evaluator_status_only():
    evaluation = curl_response_evaluator(None, {})(CURL_OUTPUT)
    assert evaluation.passed


def test_curl_evaluator_bad_json():
    output = "HTTP/1.1 500 Internal Server Error\r\n\r\n<html>oops</html>"
    evaluation = curl_response_evaluator(500, {})(output)
    assert not evaluation.passed
    assert evaluation.logs.startswith("Test FAIL! Error parsing response body:")


def test_json_response_evaluator():
    response = HttpResponse(201, "Created", {}, '{"id": 7, "name": "bob"}')
    assert json_response_evaluator(201, {"name": "bob"})(response).passed
    assert not json_response_evaluator(200, {"name": "bob"})(response).passed


def test_no_commands_no_steps():
    assert repro_values_to_steps(ReproValues()) == []


def test_build_and_curl_test_steps():
    values = ReproValues(
        build_command="npm run dev",
        test_command="curl http://localhost:3000/api/users/1",
        expected_status="200",
        expected_body='{"id": 1}',
    )
    config = ReproConfig(build_ready_text="ready on", build_inactivity_timeout=5, test_process_timeout=0)
    build, test = repro_values_to_steps(values, config)

    assert build.command == "npm run dev"
    assert build.ready_keywords == ["ready on"]
    assert build.inactivity_timeout == 5
    assert build.process_timeout is None
    assert build.log_text_filter == BUILD_LOG_TEXT_FILTER
    assert build.log_type_filters == [LogType.ERROR, LogType.STDERR]

    assert test.command == "curl http://localhost:3000/api/users/1 -i -s"
    assert test.process_timeout is None
    http_ok = "HTTP/1.1 200 OK\r\n\r\n" + '{"id": 1, "name": "bob"}'
    assert test.evaluate_output(http_ok).passed


def test_non_curl_test_gets_instruction():
    values = ReproValues(test_command="pytest -x", expected_instruction="the test should pass")
    (test,) = repro_values_to_steps(values, ReproConfig())
    assert test.command == "pytest -x"
    evaluation = test.evaluate_output("1 failed")
    assert not evaluation.passed
    assert evaluation.logs == (
        "Look at the user's instruction and verify the response manually.\n"
        "User Instruction: the test should pass"
    )


def test_test_without_expectations():
    (test,) = repro_values_to_steps(ReproValues(test_command="./run.sh"), ReproConfig())
    assert test.evaluate_output("").logs == "You have to figure out what the expected response should be."


def test_invalid_expected_body_raises():
    values = ReproValues(test_command="curl http://x", expected_body="{not json")
    with pytest.raises(ValueError, match="Invalid expected status or body"):
        repro_values_to_steps(values, ReproConfig())


def test_from_dict_ignores_unknown_keys():
    values = ReproValues.from_dict({"build_command": "make", "extra": "x", "expected_status": None})
    assert values.build_command == "make"
    assert values.expected_status == ""

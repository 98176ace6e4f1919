from diffsync.exceptions import (
    AnalysisFailedError,
    AnalysisTimeoutError,
    DatabaseConnectionError,
    EntityNotFoundError,
    LogAccessDeniedError,
    LogFilesNotFoundError,
    LogRetrievalFailedError,
    LogRetrievalTimeoutError,
    RunAlreadyActiveError,
    classify,
    error_for_code,
)


def test_app_errors_pass_through():
    err = EntityNotFoundError("unknown entity: invoices")
    assert classify(err) is err


def test_timeouts_map_by_operation():
    assert isinstance(classify(TimeoutError()), AnalysisTimeoutError)
    assert isinstance(classify(TimeoutError(), LogRetrievalFailedError), LogRetrievalTimeoutError)


def test_log_file_failures():
    assert isinstance(classify(PermissionError(), LogRetrievalFailedError), LogAccessDeniedError)
    assert isinstance(classify(FileNotFoundError(), LogRetrievalFailedError), LogFilesNotFoundError)


def test_connection_failure_during_analysis():
    assert isinstance(classify(ConnectionRefusedError()), DatabaseConnectionError)


def test_fallback_hides_raw_message():
    err = classify(RuntimeError("password=hunter2"))
    assert isinstance(err, AnalysisFailedError)
    assert "hunter2" not in str(err.to_body())
    assert "RuntimeError" in err.detail


def test_envelope_shape():
    body = RunAlreadyActiveError(context={"sessionId": "s"}).to_body()["error"]
    assert body["code"] == "RUN_ALREADY_ACTIVE"
    assert body["retryable"] is True
    assert set(body) >= {"code", "message", "details", "timestamp", "retryable", "suggestions"}


def test_error_for_code():
    assert isinstance(error_for_code("ENTITY_NOT_FOUND"), EntityNotFoundError)
    assert isinstance(error_for_code("NOT_A_CODE"), AnalysisFailedError)

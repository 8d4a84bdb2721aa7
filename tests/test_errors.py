from fedsync.core.errors import (
    ConnectionTimeout,
    FedSyncError,
    ShapeMismatch,
    UnrecognizedOption,
    UnsupportedAggregation,
    UploadTimeout,
)

def test_error_codes():
    errors = [
        ConnectionTimeout("http://server", 10.0),
        UploadTimeout("client-1", 5.0),
        ShapeMismatch("bad shape", expected=[2], actual=[3]),
        UnsupportedAggregation("median"),
        UnrecognizedOption("clientHyperparams", "foo"),
    ]
    for error in errors:
        assert isinstance(error, FedSyncError)
        assert str(error).startswith(f"[{error.error_code}] ")

def test_context():
    error = ConnectionTimeout("http://server", 10.0)
    assert error.context == {"server": "http://server", "timeout": 10.0}
    assert FedSyncError("plain").context == {}
    assert str(FedSyncError("plain")) == "plain"

import pytest

from fedsync.core.config import (
    ClientHyperparamOverrides,
    ClientHyperparams,
    client_config,
    client_hyperparams,
    client_overrides,
    resolve_hyperparam,
    server_config,
    server_hyperparams,
)
from fedsync.core.errors import FedSyncError, UnrecognizedOption

def test_defaults():
    hp = client_hyperparams()
    assert hp.batch_size == 32
    assert hp.learning_rate == 0.001
    assert hp.epochs == 5
    assert hp.examples_per_update == 5
    assert hp.weight_noise_stddev == 0.0

    server = server_hyperparams()
    assert server.aggregation == "mean"
    assert server.min_updates_per_version == 20

def test_wire_and_field_names():
    hp = client_hyperparams({"examplesPerUpdate": 3, "batch_size": 8})
    assert hp.examples_per_update == 3
    assert hp.batch_size == 8
    assert hp.model_dump(by_alias=True)["weightNoiseStddev"] == 0.0

def test_unset_values_fall_back():
    hp = client_hyperparams({"epochs": None})
    assert hp.epochs == 5

def test_unrecognized_key():
    with pytest.raises(UnrecognizedOption) as excinfo:
        client_hyperparams({"learningRat": 0.1})
    assert excinfo.value.key == "learningRat"
    assert "Unrecognized key 'learningRat'" in str(excinfo.value)
    assert isinstance(excinfo.value, FedSyncError)

def test_nested_unrecognized_key():
    with pytest.raises(UnrecognizedOption) as excinfo:
        server_config({"serverHyperparams": {"minUpdates": 2}})
    assert excinfo.value.section == "serverHyperparams"

    with pytest.raises(UnrecognizedOption):
        client_config({"hyperparams": {"bogus": 1}})

    with pytest.raises(UnrecognizedOption):
        server_config({"modelDirectory": "/tmp"})

def test_nested_config():
    config = server_config({
        "clientHyperparams": {"examplesPerUpdate": 1},
        "server_hyperparams": {"minUpdatesPerVersion": 2},
        "reclaimOnDisconnect": True,
    })
    assert config.client_hyperparams.examples_per_update == 1
    assert config.client_hyperparams.batch_size == 32
    assert config.server_hyperparams.min_updates_per_version == 2
    assert config.reclaim_on_disconnect is True

    client = client_config({"clientId": "abc", "uploadTimeout": 0.5})
    assert client.client_id == "abc"
    assert client.upload_timeout == 0.5
    assert client.connection_timeout == 10.0

def test_resolution_order():
    overrides = client_overrides({"epochs": 2})
    downloaded = ClientHyperparamOverrides(epochs=7, batch_size=16)

    # explicit override beats the download
    assert resolve_hyperparam("epochs", overrides, downloaded) == 2
    # download beats the default
    assert resolve_hyperparam("batch_size", overrides, downloaded) == 16
    # default when neither sets it
    assert resolve_hyperparam("examples_per_update", overrides, downloaded) == ClientHyperparams().examples_per_update
    assert resolve_hyperparam("learning_rate", None, None) == 0.001

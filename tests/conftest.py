import os

import pytest

from face_biometrics.app.config import AppConfig, config_from_dict


@pytest.fixture
def cfg(tmp_path):
    """Default config with data and temp dirs under tmp_path."""
    data_dir = os.path.join(tmp_path, "data")
    temp_dir = os.path.join(tmp_path, "tmp")
    os.makedirs(data_dir)
    os.makedirs(temp_dir)
    return config_from_dict({"paths": {"data_dir": data_dir, "temp_dir": temp_dir}}, AppConfig())


@pytest.fixture
def work_dir(tmp_path):
    path = os.path.join(tmp_path, "work")
    os.makedirs(path)
    return path

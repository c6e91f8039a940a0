"""Tests for the ONNX model manager."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from plantid.config import Settings
from plantid.errors import ModelLoadError
from plantid.ml.model_manager import MODEL_REGISTRY, OnnxModelManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/plantid_test_models",
        "allow_download": True,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _bundle(models_dir: Path, model_name: str = "plantnet_mobilenetv3", labels: str = "Rose\nTulip\n") -> Path:
    spec = MODEL_REGISTRY[model_name]
    target = models_dir / spec.subfolder if spec.subfolder else models_dir
    target.mkdir(parents=True, exist_ok=True)
    model_file = target / spec.filename
    model_file.write_bytes(b"onnx")
    (target / spec.labels_filename).write_text(labels, encoding="utf-8")
    return model_file


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["plantnet_mobilenetv3"]
        assert spec.name == "plantnet_mobilenetv3"
        assert spec.task == "plant_classification"

    def test_every_model_has_labels(self) -> None:
        for spec in MODEL_REGISTRY.values():
            assert spec.filename.endswith(".onnx")
            assert spec.labels_filename


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("plantid.ml.model_manager.hf_hub_download")
    def test_bundled_asset_skips_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = _bundle(tmp_path)
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        path = mgr.ensure_downloaded("plantnet_mobilenetv3")

        mock_download.assert_not_called()
        assert path == model_file

    @patch("plantid.ml.model_manager.hf_hub_download")
    def test_missing_asset_is_downloaded(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "plantnet_mobilenetv3.onnx")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        path = mgr.ensure_downloaded("plantnet_mobilenetv3")

        mock_download.assert_called_once_with(
            repo_id="plantid/plantid-models",
            filename="plantnet_mobilenetv3.onnx",
            subfolder=None,
            local_dir=str(tmp_path),
        )
        assert path == tmp_path / "plantnet_mobilenetv3.onnx"

    @patch("plantid.ml.model_manager.hf_hub_download")
    def test_missing_asset_without_download_fails(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path), allow_download=False))

        with pytest.raises(ModelLoadError, match="Bundled asset missing"):
            mgr.ensure_downloaded("plantnet_mobilenetv3")
        mock_download.assert_not_called()

    @patch("plantid.ml.model_manager.hf_hub_download")
    def test_download_failure_becomes_model_load_error(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.side_effect = OSError("network unreachable")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        with pytest.raises(ModelLoadError, match="network unreachable"):
            mgr.ensure_downloaded("plantnet_mobilenetv3")

    @patch("plantid.ml.model_manager.InferenceSession")
    def test_get_session_creates_and_caches(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        _bundle(tmp_path)
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        session1 = mgr.get_session("plantnet_mobilenetv3")
        session2 = mgr.get_session("plantnet_mobilenetv3")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    def test_malformed_model_raises_model_load_error(self, tmp_path: Path) -> None:
        model_file = _bundle(tmp_path)
        model_file.write_bytes(b"this is not an onnx model")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        with pytest.raises(ModelLoadError, match="Cannot load plantnet_mobilenetv3"):
            mgr.get_session("plantnet_mobilenetv3")
        assert mgr.get_loaded_models() == []

    def test_truncated_model_raises_model_load_error(self, tmp_path: Path) -> None:
        model_file = _bundle(tmp_path)
        model_file.write_bytes(b"")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        with pytest.raises(ModelLoadError):
            mgr.get_session("plantnet_mobilenetv3")

    @patch("plantid.ml.model_manager.InferenceSession")
    def test_get_loaded_models(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        _bundle(tmp_path)
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        assert mgr.get_loaded_models() == []
        mgr.get_session("plantnet_mobilenetv3")
        assert mgr.get_loaded_models() == ["plantnet_mobilenetv3"]

    def test_labels_skip_blank_lines(self, tmp_path: Path) -> None:
        _bundle(tmp_path, labels="Rose\n\n  Tulip  \n")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        assert mgr.get_labels("plantnet_mobilenetv3") == ["Rose", "Tulip"]

    def test_empty_labels_file_fails(self, tmp_path: Path) -> None:
        _bundle(tmp_path, labels="\n\n")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        with pytest.raises(ModelLoadError, match="empty"):
            mgr.get_labels("plantnet_mobilenetv3")

    def test_subfolder_assets_resolved(self, tmp_path: Path) -> None:
        model_file = _bundle(tmp_path, model_name="house_plants_vit_small")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        assert mgr.ensure_downloaded("house_plants_vit_small") == model_file
        assert mgr.get_labels("house_plants_vit_small") == ["Rose", "Tulip"]

    def test_provider_building_cpu(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="openvino"))
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("plantid.ml.model_manager.InferenceSession")
    def test_shutdown_clears_sessions(self, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        _bundle(tmp_path)
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        mgr.get_session("plantnet_mobilenetv3")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_model_load_error(self) -> None:
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(ModelLoadError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")

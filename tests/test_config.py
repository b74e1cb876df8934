import pytest

from reconstruction_config import ReconstructionConfig


def test_presets_scale_detail():
    draft = ReconstructionConfig.preset("draft")
    standard = ReconstructionConfig.preset("Standard")
    high = ReconstructionConfig.preset("high_quality")
    assert draft.octree.max_depth < standard.octree.max_depth < high.octree.max_depth
    assert (draft.extraction.resolution < standard.extraction.resolution
            < high.extraction.resolution)
    assert standard == ReconstructionConfig()


def test_unknown_preset_raises():
    with pytest.raises(ValueError):
        ReconstructionConfig.preset("ultra")


def test_defaults_match_documented_values():
    config = ReconstructionConfig()
    assert config.min_points == 1000
    assert config.point_weight == 4.0
    assert config.solver.max_iterations == 100
    assert config.solver.iteration_extension == 50
    assert config.solver.iteration_cap == 500
    assert config.validation.min_point_density == 500.0
    assert config.validation.max_noise_mm == 0.1
    assert config.optimizer.density_blend == 0.5
    assert config.batch.remove_outliers
    assert config.batch.outlier_normal_consistency == 0.7
    assert config.extraction.min_component_fraction == 0.05


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("RECON_PRESET", "draft")
    monkeypatch.setenv("RECON_UNITS_PER_CM", "10")
    monkeypatch.setenv("OCTREE_MAX_DEPTH", "6")
    monkeypatch.setenv("SOLVER_TOLERANCE", "1e-7")
    monkeypatch.setenv("CLINICAL_GATING", "false")
    monkeypatch.setenv("BATCH_WORKERS", "3")
    monkeypatch.setenv("REMOVE_OUTLIERS", "false")
    monkeypatch.setenv("OUTLIER_STD_RATIO", "3")
    monkeypatch.setenv("MIN_COMPONENT_FRACTION", "0.2")
    monkeypatch.setenv("VERBOSE", "0")

    config = ReconstructionConfig.from_env()
    assert config.units_per_cm == 10.0
    assert config.octree.max_depth == 6
    # Untouched preset values survive
    assert config.octree.base_depth == 5
    assert config.extraction.resolution == 32
    assert config.solver.tolerance == 1e-7
    assert config.validation.clinical_gating is False
    assert config.batch.max_workers == 3
    assert config.batch.remove_outliers is False
    assert config.batch.outlier_std_ratio == 3.0
    assert config.extraction.min_component_fraction == 0.2
    assert config.verbose is False


def test_from_env_ignores_invalid_values(monkeypatch, capsys):
    monkeypatch.setenv("RECON_PRESET", "bogus")
    monkeypatch.setenv("RECON_BACKEND", "cuda")
    monkeypatch.setenv("GRID_RESOLUTION", "lots")
    config = ReconstructionConfig.from_env()
    assert config.backend == "cpu"
    assert config.extraction.resolution == 64
    assert "[WARNING]" in capsys.readouterr().out

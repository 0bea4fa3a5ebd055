import numpy as np

from tdlmm.diagnostics import DiagnosticsLog
from tdlmm.serializer import DiagnosticsLogDTO, NDArrayDTO, from_json, to_json


def assert_array_equal_strict_dtype(a: np.ndarray, b: np.ndarray):
    assert a.shape == b.shape
    assert a.dtype == b.dtype
    if np.issubdtype(a.dtype, np.floating):
        np.testing.assert_allclose(a, b, equal_nan=True)
    else:
        assert np.array_equal(a, b)


def test_ndarraydto_roundtrip_various_dtypes_and_views():
    rng = np.random.default_rng(0)
    for dtype in (np.float32, np.float64, np.int32):
        arr = (rng.standard_normal((5, 4)).astype(dtype) if np.issubdtype(dtype, np.floating)
               else np.arange(20, dtype=dtype).reshape(5, 4))
        noncontig = arr[:, ::2]
        for original in (arr, noncontig):
            restored = NDArrayDTO.from_array(original).to_array()
            assert_array_equal_strict_dtype(original, restored)


def test_ndarraydto_scalar():
    restored = NDArrayDTO.from_array(np.float64(2.5)).to_array()
    assert restored.shape == (1,)
    assert restored[0] == 2.5


def _build_sample_log() -> DiagnosticsLog:
    log = DiagnosticsLog()
    log.add_tree_accept(1, 0, 2, 0, 2, 0.3, -0.7)
    log.add_tree_accept(2, 3, 0, 1, 1, 0.0, np.nan)
    log.add_dlm(1, 0, 0, 0, 0, 1, 0, 4, 0.25, 0.8)
    log.add_mix(1, 0, 0, 0, 4, 1, 0, 2, -0.1, 0.5)
    for k in range(3):
        log.add_record({"sigma2": 1.0 + k, "mu_exp": np.array([0.5, 1.5]) * k, "r": 5.0},
                       np.arange(4.0) + k)
    return log


def test_log_json_roundtrip():
    log = _build_sample_log()
    restored = from_json(to_json(log))

    assert restored.n_records == 3
    np.testing.assert_allclose(np.asarray(restored.tree_accept), np.asarray(log.tree_accept), equal_nan=True)
    np.testing.assert_allclose(np.asarray(restored.dlm), np.asarray(log.dlm))
    np.testing.assert_allclose(np.asarray(restored.mix), np.asarray(log.mix))
    for key in log.trace:
        np.testing.assert_allclose(restored.trace_array(key), log.trace_array(key))
    np.testing.assert_allclose(restored.fhat, log.fhat)
    frames = restored.frames()
    assert list(frames["dlm"].columns) == list(DiagnosticsLog.DLM_COLUMNS)
    assert len(frames["tree_accept"]) == 2


def test_empty_log_roundtrip():
    dto = DiagnosticsLogDTO.model_validate_json(to_json(DiagnosticsLog()))
    assert dto.fhat_sum is None
    restored = from_json(dto.model_dump_json())
    assert restored.n_records == 0
    assert restored.tree_accept == []
    assert restored.trace == {}

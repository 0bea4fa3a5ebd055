"""
Pydantic DTOs and helpers to serialize/deserialize a `DiagnosticsLog`.

NumPy arrays are encoded as base64 with explicit dtype and shape so that the
recorded draws round-trip exactly.

Usage:
- Create JSON from a log: `to_json(log)`
- Restore a log from JSON: `from_json(json_str)`
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple
import base64

import numpy as np
from pydantic import BaseModel

from .diagnostics import DiagnosticsLog


class NDArrayDTO(BaseModel):
    """Lossless encoding for a NumPy array as dtype + shape + base64 data."""

    shape: Tuple[int, ...]
    dtype: str
    data: str  # base64-encoded little-endian bytes from `arr.tobytes()`

    @staticmethod
    def from_array(arr: np.ndarray) -> "NDArrayDTO":
        # Ensure contiguous memory for stable tobytes
        a = np.ascontiguousarray(arr)
        data_b64 = base64.b64encode(a.tobytes()).decode("ascii")
        return NDArrayDTO(shape=a.shape, dtype=str(a.dtype), data=data_b64)

    def to_array(self) -> np.ndarray:
        raw = base64.b64decode(self.data.encode("ascii"))
        arr = np.frombuffer(raw, dtype=np.dtype(self.dtype)).copy()
        if self.shape:
            arr = arr.reshape(self.shape)
        return arr


class DiagnosticsLogDTO(BaseModel):
    """Serializable state of a DiagnosticsLog."""

    tree_accept: NDArrayDTO
    dlm: NDArrayDTO
    mix: NDArrayDTO
    trace: Dict[str, NDArrayDTO]
    fhat_sum: Optional[NDArrayDTO] = None
    n_records: int = 0


def _rows_to_array(rows: List[tuple], n_cols: int) -> np.ndarray:
    return np.asarray(rows, dtype=np.float64).reshape(-1, n_cols)


def log_to_dto(log: DiagnosticsLog) -> DiagnosticsLogDTO:
    return DiagnosticsLogDTO(
        tree_accept=NDArrayDTO.from_array(_rows_to_array(log.tree_accept, len(log.TREE_ACCEPT_COLUMNS))),
        dlm=NDArrayDTO.from_array(_rows_to_array(log.dlm, len(log.DLM_COLUMNS))),
        mix=NDArrayDTO.from_array(_rows_to_array(log.mix, len(log.MIX_COLUMNS))),
        trace={key: NDArrayDTO.from_array(log.trace_array(key)) for key in log.trace},
        fhat_sum=NDArrayDTO.from_array(log.fhat_sum) if log.fhat_sum is not None else None,
        n_records=log.n_records,
    )


def dto_to_log(dto: DiagnosticsLogDTO) -> DiagnosticsLog:
    log = DiagnosticsLog()
    log.tree_accept = [tuple(row) for row in dto.tree_accept.to_array()]
    log.dlm = [tuple(row) for row in dto.dlm.to_array()]
    log.mix = [tuple(row) for row in dto.mix.to_array()]
    log.trace = {key: list(arr.to_array()) for key, arr in dto.trace.items()}
    log.fhat_sum = dto.fhat_sum.to_array() if dto.fhat_sum is not None else None
    log.n_records = dto.n_records
    return log


def to_json(log: DiagnosticsLog) -> str:
    return log_to_dto(log).model_dump_json()


def from_json(json_str: str) -> DiagnosticsLog:
    return dto_to_log(DiagnosticsLogDTO.model_validate_json(json_str))


__all__ = [
    "NDArrayDTO",
    "DiagnosticsLogDTO",
    "to_json",
    "from_json",
]

"""
Pydantic DTOs and helpers to serialize/deserialize trees and models.

Design notes:
- NumPy arrays are encoded as base64 with explicit dtype and shape so that
  tree matrices survive a round trip bit for bit, including the +inf
  cutpoints of leaves.
- A tree is stored as its (N, 4) tree matrix; a model as its tree matrices,
  its serialized variable summaries and its global parameters. Training data
  are only included on request.

Usage:
- Create JSON from a model: `model_to_json(model)`
- Restore a model from JSON: `model_from_json(json_str)`
"""

from __future__ import annotations

import base64
from typing import Dict, List, Literal, Optional, Tuple

import numpy as np
from pydantic import BaseModel

from .model import BartModelBase, GaussianBartModel, LogitBartModel
from .params import Tree
from .variable_summary import SerializedVariableSummary


class NDArrayDTO(BaseModel):
    """Lossless encoding for a NumPy array as dtype + shape + base64 data."""

    shape: Tuple[int, ...]
    dtype: str
    data: str  # base64-encoded bytes from `arr.tobytes()`

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


class TreeDTO(BaseModel):
    """Serializable state for a single Tree."""

    matrix: NDArrayDTO


class DataDTO(BaseModel):
    X: NDArrayDTO
    y: NDArrayDTO
    n: Optional[NDArrayDTO] = None


class ModelDTO(BaseModel):
    """Serializable state for a full model."""

    kind: Literal["gaussian", "logit"]
    mean: float
    trees: List[TreeDTO]
    variable_summaries: List[SerializedVariableSummary]
    global_params: Dict[str, float]
    data: Optional[DataDTO] = None


def tree_to_dto(tree: Tree) -> TreeDTO:
    return TreeDTO(matrix=NDArrayDTO.from_array(tree.to_matrix()))


def dto_to_tree(dto: TreeDTO) -> Tree:
    return Tree.new_from_matrix(dto.matrix.to_array())


def tree_to_json(tree: Tree) -> str:
    return tree_to_dto(tree).model_dump_json()


def tree_from_json(s: str) -> Tree:
    return dto_to_tree(TreeDTO.model_validate_json(s))


def _kind(model: BartModelBase) -> str:
    if isinstance(model, GaussianBartModel):
        return "gaussian"
    if isinstance(model, LogitBartModel):
        return "logit"
    raise TypeError(f"Unsupported model type {type(model).__name__}")


def model_to_dto(model: BartModelBase, *, include_data: bool = False) -> ModelDTO:
    """Convert a runtime model into a ModelDTO."""
    kind = _kind(model)
    data = None
    if include_data and model.sample_size > 0:
        data = DataDTO(
            X=NDArrayDTO.from_array(model.X),
            y=NDArrayDTO.from_array(model.y),
            n=NDArrayDTO.from_array(model.n) if kind == "logit" else None,
        )
    return ModelDTO(
        kind=kind,
        mean=model.mean,
        trees=[tree_to_dto(tree) for tree in model.trees],
        variable_summaries=[s.serialize() for s in model.variable_summaries],
        global_params={k: float(v) for k, v in model.global_params.items()},
        data=data,
    )


def dto_to_model(dto: ModelDTO) -> BartModelBase:
    """Rebuild a runtime model from a ModelDTO."""
    n_trees = len(dto.trees)
    if dto.kind == "gaussian":
        model = GaussianBartModel(n_trees, mean=dto.mean)
        if dto.data is not None:
            model.set_data(dto.data.X.to_array(), dto.data.y.to_array())
    else:
        model = LogitBartModel(n_trees, mean=dto.mean)
        if dto.data is not None:
            trials = dto.data.n.to_array() if dto.data.n is not None else None
            model.set_data(dto.data.X.to_array(), dto.data.y.to_array(), trials)
    model.set_variable_summaries(dto.variable_summaries)
    for i, tree_dto in enumerate(dto.trees):
        model.rebuild_tree(i, tree_dto.matrix.to_array())
    model.set_global_params(dto.global_params)
    return model


def model_to_json(model: BartModelBase, *, include_data: bool = False) -> str:
    return model_to_dto(model, include_data=include_data).model_dump_json()


def model_from_json(s: str) -> BartModelBase:
    return dto_to_model(ModelDTO.model_validate_json(s))


__all__ = [
    "NDArrayDTO",
    "TreeDTO",
    "DataDTO",
    "ModelDTO",
    "tree_to_dto",
    "dto_to_tree",
    "tree_to_json",
    "tree_from_json",
    "model_to_dto",
    "dto_to_model",
    "model_to_json",
    "model_from_json",
]

import json

import numpy as np
import pytest
from pydantic import ValidationError

from bart_backfit import GaussianBartModel, GaussianBartPosteriorSampler, LogitBartModel, Tree
from bart_backfit.serializer import (
    NDArrayDTO,
    ModelDTO,
    tree_to_dto,
    dto_to_tree,
    tree_to_json,
    tree_from_json,
    model_to_dto,
    dto_to_model,
    model_to_json,
    model_from_json,
)


def make_tree():
    tree = Tree(0.0)
    tree.root.set_variable_and_cutpoint(1, 0.25)
    left, right = tree.grow(tree.root, -1.0, 2.0)
    right.set_variable_and_cutpoint(0, 0.75)
    right.grow(0.5, 1.5)
    return tree


def make_fitted_gaussian_model(include_sweeps=True):
    rng = np.random.default_rng(0)
    X = rng.uniform(size=(60, 2))
    y = np.where(X[:, 0] > 0.5, 1.0, -1.0) + rng.normal(0, 0.1, size=60)
    model = GaussianBartModel(4, sigsq=0.5)
    model.set_data(X, y)
    model.finalize_data()
    if include_sweeps:
        sampler = GaussianBartPosteriorSampler(model, 0.3, 3.0, 0.0, 0.5, generator=0)
        for _ in range(10):
            sampler.draw()
    return model


def test_ndarray_dto_roundtrip_keeps_dtype_and_inf():
    arr = np.array([[1.0, np.inf], [-np.inf, 0.5]])
    out = NDArrayDTO.from_array(arr).to_array()
    assert out.dtype == arr.dtype
    assert out.shape == arr.shape
    np.testing.assert_array_equal(out, arr)

    ints = np.arange(6, dtype=np.int32).reshape(3, 2)
    out = NDArrayDTO.model_validate_json(NDArrayDTO.from_array(ints).model_dump_json()).to_array()
    assert out.dtype == np.int32
    np.testing.assert_array_equal(out, ints)


def test_tree_roundtrip():
    tree = make_tree()
    assert dto_to_tree(tree_to_dto(tree)) == tree
    restored = tree_from_json(tree_to_json(tree))
    assert restored == tree
    X = np.random.default_rng(1).uniform(size=(20, 2))
    np.testing.assert_array_equal(restored.evaluate(X), tree.evaluate(X))


def test_tree_json_is_a_matrix_payload():
    payload = json.loads(tree_to_json(make_tree()))
    assert payload["matrix"]["shape"] == [5, 4]
    assert payload["matrix"]["dtype"] == "float64"


def test_model_roundtrip_preserves_predictions():
    model = make_fitted_gaussian_model()
    restored = model_from_json(model_to_json(model))
    assert isinstance(restored, GaussianBartModel)
    assert restored.finalized
    assert restored.number_of_trees == model.number_of_trees
    assert restored.sigsq == model.sigsq
    assert restored.sample_size == 0
    for a, b in zip(restored.trees, model.trees):
        assert a == b
    X = np.random.default_rng(2).uniform(size=(30, 2))
    np.testing.assert_array_equal(restored.evaluate(X), model.evaluate(X))
    assert [s.serialize() for s in restored.variable_summaries] == \
        [s.serialize() for s in model.variable_summaries]


def test_model_roundtrip_with_data_can_keep_sampling():
    model = make_fitted_gaussian_model()
    restored = dto_to_model(model_to_dto(model, include_data=True))
    np.testing.assert_array_equal(restored.X, model.X)
    np.testing.assert_array_equal(restored.y, model.y)
    sampler = GaussianBartPosteriorSampler(restored, 0.3, 3.0, 0.0, 0.5, generator=1)
    sampler.draw()
    np.testing.assert_allclose(sampler.residuals.residual, restored.y - restored.evaluate(restored.X), atol=1e-10)


def test_logit_model_roundtrip():
    model = LogitBartModel(2)
    model.set_data(np.arange(10.0).reshape(-1, 1), np.array([0, 1] * 5), np.full(10, 2.0))
    model.finalize_data()
    model.tree(0).root.set_mean(0.3)
    restored = model_from_json(model_to_json(model, include_data=True))
    assert isinstance(restored, LogitBartModel)
    np.testing.assert_array_equal(restored.n, model.n)
    assert restored.success_probability([1.0]) == pytest.approx(model.success_probability([1.0]))


def test_malformed_payloads_are_rejected():
    payload = json.loads(model_to_json(make_fitted_gaussian_model(include_sweeps=False)))
    payload["kind"] = "poisson"
    with pytest.raises(ValidationError):
        model_from_json(json.dumps(payload))

    payload = json.loads(model_to_json(make_fitted_gaussian_model(include_sweeps=False)))
    del payload["trees"]
    with pytest.raises(ValidationError):
        ModelDTO.model_validate(payload)

    payload = json.loads(model_to_json(make_fitted_gaussian_model(include_sweeps=False)))
    payload["trees"][0]["matrix"] = NDArrayDTO.from_array(np.zeros((2, 3))).model_dump()
    with pytest.raises(ValueError):
        model_from_json(json.dumps(payload))

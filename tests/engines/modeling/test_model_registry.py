import pytest

from sklearn.base import clone

from saive.engines.modeling import model_registry
from saive.engines.modeling.model_registry import CLASSIFICATION, REGRESSION


@pytest.fixture
def victim():
    return model_registry


def test_available_methods(victim):
    result = victim.available_methods()
    assert 'random_forest' in result
    assert 'xgboost' in result

    classification = victim.available_methods(CLASSIFICATION)
    assert 'logistic_regression' in classification
    assert 'elastic_net' not in classification

    regression = victim.available_methods(REGRESSION)
    assert 'elastic_net' in regression
    assert 'naive_bayes' not in regression


def test_available_methods_unknown_task(victim):
    with pytest.raises(ValueError):
        victim.available_methods('clustering')


def test_get_model(victim):
    first, grid = victim.get_model('random_forest', CLASSIFICATION)
    second, _ = victim.get_model('random_forest', CLASSIFICATION)
    assert first is not second
    assert 'max_features' in grid

    grid['max_features'] = ['log2']
    _, fresh_grid = victim.get_model('random_forest', CLASSIFICATION)
    assert fresh_grid['max_features'] == ['sqrt', 0.5, 1.0]


def test_get_model_grids_match_estimators(victim):
    for method, tasks in victim.MODELS.items():
        for task in tasks:
            estimator, grid = victim.get_model(method, task)
            clone(estimator).set_params(**{name: values[0] for name, values in grid.items()})


def test_get_model_errors(victim):
    with pytest.raises(KeyError, match='Unknown method'):
        victim.get_model('deep_magic', CLASSIFICATION)
    with pytest.raises(KeyError, match='does not support'):
        victim.get_model('elastic_net', CLASSIFICATION)

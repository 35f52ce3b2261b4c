import pytest
import numpy as np
import pandas as pd

from saive.engines.modeling import ModelTrainer
from saive.engines.modeling.ModelTrainer import ModelHandle, ModelTrainingException, TrainControl
from saive.engines.modeling.model_registry import CLASSIFICATION, REGRESSION


@pytest.fixture
def victim():
    return ModelTrainer


def test_train_control():
    control = TrainControl()
    assert control.method == 'cv'
    assert control.number == 5

    with pytest.raises(ValueError):
        TrainControl(method='loocv')
    with pytest.raises(ValueError):
        TrainControl(method='cv', number=1)
    with pytest.raises(ValueError):
        TrainControl(method='repeatedcv', repeats=0)


def test_get_task(victim, classification_table, regression_table):
    assert victim.get_task(classification_table['label']) == CLASSIFICATION
    assert victim.get_task(regression_table['depth']) == REGRESSION
    assert victim.get_task(pd.Series([1, 2, 3])) == REGRESSION


def test_get_resampling(victim):
    result = victim.get_resampling(TrainControl(method='cv', number=4), CLASSIFICATION, 100)
    assert type(result).__name__ == 'StratifiedKFold'
    assert result.get_n_splits() == 4

    result = victim.get_resampling(TrainControl(method='repeatedcv', number=3, repeats=2), REGRESSION, 100)
    assert result.get_n_splits() == 6

    result = victim.get_resampling(TrainControl(method='boot', number=3, random_state=0), REGRESSION, 50)
    assert len(result) == 3
    in_bag, out_of_bag = result[0]
    assert len(in_bag) == 50
    assert not set(in_bag) & set(out_of_bag)

    assert victim.get_resampling(TrainControl(method='none'), REGRESSION, 50) is None


def test_train_model_classification(victim, classification_table):
    control = TrainControl(method='cv', number=3, random_state=0)
    result = victim.train_model(classification_table, 'label', 'naive_bayes', control)
    assert isinstance(result, ModelHandle)
    assert result.task == CLASSIFICATION
    assert result.predictors == ['x0', 'x1']
    assert result.classes == ['high', 'low', 'mid']
    assert victim.is_trained_model(result)

    predicted = result.predict(classification_table)
    assert set(predicted) <= {'high', 'low', 'mid'}


def test_train_model_tune_grid(victim, classification_table):
    control = TrainControl(method='cv', number=3, tune_grid={'max_depth': [2, 4]},
                           params={'n_estimators': 20}, random_state=0)
    result = victim.train_model(classification_table, 'label', 'random_forest', control)
    assert set(result.best_params) == {'max_depth'}
    assert result.estimator.n_estimators == 20
    assert len(result.resampling) == 2


def test_train_model_regression(victim, regression_table):
    control = TrainControl(method='boot', number=3, random_state=0)
    result = victim.train_model(regression_table, 'depth', 'elastic_net', control)
    assert result.task == REGRESSION
    assert result.label_encoder is None
    assert result.classes == []


def test_train_model_no_resampling(victim, regression_table):
    result = victim.train_model(regression_table, 'depth', 'knn', TrainControl(method='none'))
    assert result.estimator[-1].n_neighbors == 5
    assert victim.is_trained_model(result)


def test_train_model_missing_values(victim, regression_table):
    regression_table.loc[:9, 'x1'] = np.nan
    result = victim.train_model(regression_table, 'depth', 'knn', TrainControl(method='none'))
    assert victim.is_trained_model(result)


def test_train_model_errors(victim, classification_table, regression_table):
    control = TrainControl(method='cv', number=3)
    with pytest.raises(ModelTrainingException, match='Unknown method'):
        victim.train_model(classification_table, 'label', 'deep_magic', control)
    with pytest.raises(ModelTrainingException, match='does not support'):
        victim.train_model(regression_table, 'depth', 'logistic_regression', control)
    with pytest.raises(ModelTrainingException, match='No predictor columns'):
        victim.train_model(classification_table[['label']], 'label', 'naive_bayes', control)

    single_class = classification_table.assign(label=pd.Categorical(['only'] * len(classification_table)))
    with pytest.raises(ModelTrainingException, match='at least two'):
        victim.train_model(single_class, 'label', 'naive_bayes', control)


def test_is_trained_model(victim):
    from sklearn.naive_bayes import GaussianNB

    assert not victim.is_trained_model(None)
    assert not victim.is_trained_model(GaussianNB())
    unfitted = ModelHandle('naive_bayes', CLASSIFICATION, GaussianNB(), ['x0'], 'label')
    assert not victim.is_trained_model(unfitted)


def test_score_model_classification(victim, classification_table):
    model = victim.train_model(classification_table, 'label', 'naive_bayes', TrainControl(method='none'))
    result = victim.score_model(model, classification_table)
    assert result.task == CLASSIFICATION
    assert 0.6 < result.accuracy <= 1.0
    assert result.metrics['accuracy'] == result.accuracy
    assert 'kappa' in result.metrics
    assert result.confusion_matrix.index.name == 'reference'
    assert result.confusion_matrix.columns.name == 'prediction'
    assert result.confusion_matrix.to_numpy().sum() == len(classification_table)
    assert result.n == len(classification_table)


def test_score_model_regression(victim, regression_table):
    model = victim.train_model(regression_table, 'depth', 'elastic_net', TrainControl(method='none'))
    result = victim.score_model(model, regression_table)
    assert result.task == REGRESSION
    assert result.accuracy == result.metrics['r2']
    assert result.accuracy > 0.9
    assert result.metrics['rmse'] > 0
    assert result.confusion_matrix is None


def test_score_model_empty(victim, regression_table):
    model = victim.train_model(regression_table, 'depth', 'elastic_net', TrainControl(method='none'))
    with pytest.raises(ModelTrainingException, match='No complete rows'):
        victim.score_model(model, regression_table.assign(x0=np.nan))

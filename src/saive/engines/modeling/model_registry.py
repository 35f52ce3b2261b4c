"""Lookup of the model types available to the training step"""

import xgboost as xgb

from sklearn.ensemble import (
    ExtraTreesClassifier,
    ExtraTreesRegressor,
    GradientBoostingClassifier,
    GradientBoostingRegressor,
    RandomForestClassifier,
    RandomForestRegressor,
)
from sklearn.linear_model import ElasticNet, LogisticRegression
from sklearn.naive_bayes import GaussianNB
from sklearn.neighbors import KNeighborsClassifier, KNeighborsRegressor
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler
from sklearn.svm import SVC, SVR


CLASSIFICATION = 'classification'
REGRESSION = 'regression'


def _scaled(estimator):
    return make_pipeline(StandardScaler(), estimator)


# method name -> task -> (estimator factory, default tuning grid)
MODELS = {
    'random_forest': {
        CLASSIFICATION: (lambda: RandomForestClassifier(n_estimators=500, random_state=1),
                         {'max_features': ['sqrt', 0.5, 1.0]}),
        REGRESSION: (lambda: RandomForestRegressor(n_estimators=500, random_state=1),
                     {'max_features': ['sqrt', 0.5, 1.0]}),
    },
    'extra_trees': {
        CLASSIFICATION: (lambda: ExtraTreesClassifier(n_estimators=500, random_state=1),
                         {'max_features': ['sqrt', 0.5, 1.0]}),
        REGRESSION: (lambda: ExtraTreesRegressor(n_estimators=500, random_state=1),
                     {'max_features': ['sqrt', 0.5, 1.0]}),
    },
    'gradient_boosting': {
        CLASSIFICATION: (lambda: GradientBoostingClassifier(random_state=1),
                         {'max_depth': [2, 3], 'learning_rate': [0.05, 0.1]}),
        REGRESSION: (lambda: GradientBoostingRegressor(random_state=1),
                     {'max_depth': [2, 3], 'learning_rate': [0.05, 0.1]}),
    },
    'xgboost': {
        CLASSIFICATION: (lambda: xgb.XGBClassifier(n_estimators=300, random_state=1, n_jobs=1),
                         {'max_depth': [3, 6], 'learning_rate': [0.05, 0.3]}),
        REGRESSION: (lambda: xgb.XGBRegressor(n_estimators=300, objective='reg:squarederror', random_state=1, n_jobs=1),
                     {'max_depth': [3, 6], 'learning_rate': [0.05, 0.3]}),
    },
    'knn': {
        CLASSIFICATION: (lambda: _scaled(KNeighborsClassifier()),
                         {'kneighborsclassifier__n_neighbors': [5, 7, 9]}),
        REGRESSION: (lambda: _scaled(KNeighborsRegressor()),
                     {'kneighborsregressor__n_neighbors': [5, 7, 9]}),
    },
    'svm': {
        CLASSIFICATION: (lambda: _scaled(SVC(kernel='rbf')),
                         {'svc__C': [0.25, 1.0, 4.0]}),
        REGRESSION: (lambda: _scaled(SVR(kernel='rbf')),
                     {'svr__C': [0.25, 1.0, 4.0]}),
    },
    'logistic_regression': {
        CLASSIFICATION: (lambda: _scaled(LogisticRegression(max_iter=1000)),
                         {'logisticregression__C': [0.1, 1.0, 10.0]}),
    },
    'elastic_net': {
        REGRESSION: (lambda: _scaled(ElasticNet(max_iter=5000)),
                     {'elasticnet__alpha': [0.01, 0.1, 1.0], 'elasticnet__l1_ratio': [0.1, 0.5, 0.9]}),
    },
    'naive_bayes': {
        CLASSIFICATION: (lambda: GaussianNB(), {}),
    },
}


def available_methods(task: str = None) -> list[str]:
    """
    List the method names that can be passed to the training step

    :param str task: Optional "classification" or "regression" to only list suitable methods
    :returns list[str]: Method names
    """

    if task is None:
        return list(MODELS)
    if task not in (CLASSIFICATION, REGRESSION):
        raise ValueError(f'Unknown task "{task}", use "{CLASSIFICATION}" or "{REGRESSION}"')
    return [method for method, tasks in MODELS.items() if task in tasks]


def get_model(method: str, task: str) -> tuple:
    """Obtain a fresh estimator and its default tuning grid"""

    if method not in MODELS:
        raise KeyError(f'Unknown method "{method}". Available methods: {", ".join(MODELS)}')
    if task not in MODELS[method]:
        raise KeyError(f'Method "{method}" does not support {task}')
    factory, grid = MODELS[method][task]
    return factory(), dict(grid)

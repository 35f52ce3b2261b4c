"""Training and scoring of a single model type on a training table"""

import logging
import numpy as np
import pandas as pd

from dataclasses import dataclass, field
from sklearn.exceptions import NotFittedError
from sklearn.metrics import (
    accuracy_score,
    classification_report,
    cohen_kappa_score,
    confusion_matrix,
    mean_absolute_error,
    mean_squared_error,
    r2_score,
)
from sklearn.model_selection import GridSearchCV, KFold, RepeatedKFold, RepeatedStratifiedKFold, StratifiedKFold
from sklearn.preprocessing import LabelEncoder
from sklearn.utils.validation import check_is_fitted

from saive.engines.modeling.model_registry import CLASSIFICATION, REGRESSION, get_model


logger = logging.getLogger(__name__)

RESAMPLING_METHODS = ['cv', 'repeatedcv', 'boot', 'none']


class ModelTrainingException(Exception):
    """Custom exception for model training"""

    pass


@dataclass
class TrainControl:
    """
    Parameters used to control training of a model

    method: resampling used to tune the model, one of "cv", "repeatedcv", "boot" or "none"
    number: folds for "cv"/"repeatedcv" or resamples for "boot"
    repeats: repeats for "repeatedcv"
    tune_grid: parameter grid replacing the default grid of the method
    params: fixed estimator parameters
    """

    method: str = 'cv'
    number: int = 5
    repeats: int = 1
    tune_grid: dict = None
    params: dict = field(default_factory=dict)
    random_state: int = None
    verbose: int = 0

    def __post_init__(self):
        if self.method not in RESAMPLING_METHODS:
            raise ValueError(f'TrainControl method must be one of {RESAMPLING_METHODS}, got "{self.method}"')
        if self.method != 'none' and self.number < 2:
            raise ValueError('TrainControl number must be at least 2')
        if self.repeats < 1:
            raise ValueError('TrainControl repeats must be at least 1')


@dataclass
class ModelHandle:
    """A fitted model and what is needed to apply it to new data"""

    method: str
    task: str
    estimator: object
    predictors: list
    outcome: str
    label_encoder: LabelEncoder = None
    best_params: dict = field(default_factory=dict)
    resampling: pd.DataFrame = None

    @property
    def classes(self) -> list:
        if self.label_encoder is None:
            return []
        return list(self.label_encoder.classes_)

    def predict(self, frame: pd.DataFrame) -> np.ndarray:
        """Predict outcome values in the units/labels of the training outcome"""

        predicted = self.estimator.predict(frame[self.predictors])
        if self.label_encoder is not None:
            return self.label_encoder.inverse_transform(np.asarray(predicted).astype(int).ravel())
        return np.asarray(predicted).ravel()


@dataclass
class PerformanceSummary:
    """Model performance on a testing table"""

    task: str
    accuracy: float
    metrics: dict
    confusion_matrix: pd.DataFrame = None
    n: int = 0


def get_task(outcome: pd.Series) -> str:
    """Categorical outcomes are classification problems, everything else regression"""

    if isinstance(outcome.dtype, pd.CategoricalDtype):
        return CLASSIFICATION
    return REGRESSION


def get_resampling(control: TrainControl, task: str, n_rows: int):
    """Build the scikit-learn splitter matching the TrainControl resampling method"""

    if control.method == 'cv':
        if task == CLASSIFICATION:
            return StratifiedKFold(n_splits=control.number, shuffle=True, random_state=control.random_state)
        return KFold(n_splits=control.number, shuffle=True, random_state=control.random_state)
    elif control.method == 'repeatedcv':
        if task == CLASSIFICATION:
            return RepeatedStratifiedKFold(n_splits=control.number, n_repeats=control.repeats, random_state=control.random_state)
        return RepeatedKFold(n_splits=control.number, n_repeats=control.repeats, random_state=control.random_state)
    elif control.method == 'boot':
        # bootstrap resamples, scored on the out-of-bag rows
        rng = np.random.default_rng(control.random_state)
        splits = []
        for _ in range(control.number):
            in_bag = rng.integers(0, n_rows, n_rows)
            out_of_bag = np.setdiff1d(np.arange(n_rows), in_bag)
            splits.append((in_bag, out_of_bag))
        return splits
    return None


def is_trained_model(model) -> bool:
    """Only fitted ModelHandle objects are usable for scoring and prediction"""

    if not isinstance(model, ModelHandle):
        return False
    try:
        check_is_fitted(model.estimator)
    except (NotFittedError, TypeError):
        return False
    return True


def train_model(table: pd.DataFrame, outcome_col: str, method: str, control: TrainControl) -> ModelHandle:
    """
    Train one model type on a training table

    Every column other than outcome_col is used as a predictor. Rows with
    missing values are left out. Hyper-parameters are tuned over the grid of
    the method with the resampling scheme of the control, and the best
    parameters are refit on all rows.

    :param pd.DataFrame table: Outcome column plus predictor columns
    :param str outcome_col: Name of the outcome column
    :param str method: Method name from model_registry.available_methods()
    :param TrainControl control: Resampling and tuning options
    :returns ModelHandle: The fitted model
    """

    predictors = [column for column in table.columns if column != outcome_col]
    if not predictors:
        raise ModelTrainingException('No predictor columns in training table')
    complete = table.dropna(subset=[outcome_col] + predictors)
    if len(complete) < len(table):
        logger.debug(f'{method}: dropped {len(table) - len(complete)} rows with missing values')
    if complete.empty:
        raise ModelTrainingException('No complete rows in training table')

    task = get_task(table[outcome_col])
    try:
        estimator, grid = get_model(method, task)
    except KeyError as e:
        raise ModelTrainingException(str(e.args[0])) from e
    if control.params:
        estimator.set_params(**control.params)
    if control.tune_grid is not None:
        grid = dict(control.tune_grid)

    X = complete[predictors]
    label_encoder = None
    if task == CLASSIFICATION:
        label_encoder = LabelEncoder()
        y = label_encoder.fit_transform(complete[outcome_col].to_numpy())
        if len(label_encoder.classes_) < 2:
            raise ModelTrainingException('Classification needs at least two outcome classes')
    else:
        y = complete[outcome_col].to_numpy(dtype=float)

    if control.method == 'none':
        # no resampling, parameters taken as given
        if grid:
            estimator.set_params(**{name: values[0] for name, values in grid.items()})
        estimator.fit(X, y)
        return ModelHandle(method, task, estimator, predictors, outcome_col, label_encoder,
                           best_params=estimator.get_params(deep=False))

    search = GridSearchCV(
        estimator,
        grid,
        scoring='accuracy' if task == CLASSIFICATION else 'r2',
        cv=get_resampling(control, task, len(complete)),
        n_jobs=-1,
        refit=True,
        verbose=control.verbose,
        error_score='raise',
    )
    search.fit(X, y)
    return ModelHandle(
        method,
        task,
        search.best_estimator_,
        predictors,
        outcome_col,
        label_encoder,
        best_params=search.best_params_,
        resampling=pd.DataFrame(search.cv_results_),
    )


def score_model(model: ModelHandle, table: pd.DataFrame) -> PerformanceSummary:
    """
    Score a fitted model against a testing table

    Classification reports accuracy, kappa and a confusion matrix
    (rows: reference, columns: prediction). Regression reports R² as the
    accuracy along with RMSE and MAE.
    """

    complete = table.dropna(subset=[model.outcome] + model.predictors)
    if complete.empty:
        raise ModelTrainingException('No complete rows in testing table')
    predicted = model.predict(complete)
    truth = complete[model.outcome]

    if model.task == CLASSIFICATION:
        if isinstance(truth.dtype, pd.CategoricalDtype):
            labels = list(truth.cat.categories)
        else:
            labels = list(pd.unique(truth))
        labels += [label for label in pd.unique(predicted) if label not in labels]
        truth = truth.to_numpy()
        matrix = pd.DataFrame(
            confusion_matrix(truth, predicted, labels=labels),
            index=pd.Index(labels, name='reference'),
            columns=pd.Index(labels, name='prediction'),
        )
        accuracy = accuracy_score(truth, predicted)
        metrics = {
            'accuracy': accuracy,
            'kappa': cohen_kappa_score(truth, predicted, labels=labels),
            'by_class': classification_report(truth, predicted, labels=labels, output_dict=True, zero_division=0),
        }
        return PerformanceSummary(model.task, accuracy, metrics, matrix, len(complete))

    truth = truth.to_numpy(dtype=float)
    r2 = r2_score(truth, predicted)
    metrics = {
        'r2': r2,
        'rmse': float(np.sqrt(mean_squared_error(truth, predicted))),
        'mae': mean_absolute_error(truth, predicted),
    }
    return PerformanceSummary(model.task, r2, metrics, None, len(complete))

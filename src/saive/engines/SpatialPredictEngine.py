import pathlib
import warnings
import joblib
import numpy as np
import pandas as pd
import geopandas as gpd
import xarray as xr

from contextlib import contextmanager
from dataclasses import dataclass, field
from dask.distributed import Client

from saive.engines.Engine import Engine
from saive.engines.ThinFeaturesEngine import ThinFeaturesEngine
from saive.engines.modeling.ModelTrainer import (
    ModelHandle,
    ModelTrainingException,
    PerformanceSummary,
    get_task,
    is_trained_model,
    score_model,
    train_model,
)
from saive.engines.modeling.RasterPredictor import get_class_lookup, predict_raster
from saive.engines.modeling.model_registry import CLASSIFICATION
from saive.helpers.spatial import extract_values, model_table, project_outcome, sample_polygons, spatial_block_split
from saive.helpers.tools import dated_output_path, get_config_item, resolve_cores, show_all_warnings
from saive.helpers.validation import validate_inputs


class SpatialPredictException(Exception):
    """Custom exception for tool"""

    pass


@dataclass
class ModelResult:
    """Outcome of training one method: a fitted model or the reason it failed"""

    method: str
    model: ModelHandle = None
    performance: PerformanceSummary = None
    warnings: list = field(default_factory=list)
    error: str = None

    @property
    def status(self) -> str:
        if self.error:
            return 'failed'
        if self.model is None:
            return 'pending'
        if self.warnings:
            return 'warned'
        return 'trained'


@dataclass(frozen=True)
class WorkflowResult:
    """Everything produced by SpatialPredictEngine.run"""

    selected_method: str
    best_model: ModelHandle
    selected_model_performance: PerformanceSummary
    trained_models_performance: dict
    model_results: dict
    training: gpd.GeoDataFrame
    testing: gpd.GeoDataFrame
    blocks: gpd.GeoDataFrame
    predictors: tuple
    selection_report: object = None
    prediction: xr.DataArray = None
    prediction_path: pathlib.Path = None
    class_lookup: dict = field(default_factory=dict)
    notices: tuple = ()

    @property
    def failed_methods(self) -> list:
        return [method for method, result in self.model_results.items() if result.error]

    @property
    def warned_methods(self) -> list:
        return [method for method, result in self.model_results.items() if result.warnings]

    @property
    def error_messages(self) -> list:
        return [result.error for result in self.model_results.values() if result.error]

    @property
    def warn_messages(self) -> list:
        return [f'Warning while running model {method}: {message}'
                for method, result in self.model_results.items() for message in result.warnings]


class SpatialPredictEngine(Engine):
    """
    Class to hold the logic for predicting a spatial variable with machine learning

    Trains one or several model types on raster values sampled at the
    outcome points, keeps the most accurate one and optionally applies it
    to the full extent of the features.

    The external services are replaceable:
        trainer(table, outcome_col, method, control) -> ModelHandle
        scorer(model, table) -> PerformanceSummary
        selector(table, outcome_col) -> (retained columns, report)
        predictor(model, stack, output_path) -> DataArray
    """

    def __init__(self, trainer=None, scorer=None, selector=None, predictor=None, random_state: int = None):
        super().__init__()
        self.trainer = trainer if trainer else train_model
        self.scorer = scorer if scorer else score_model
        self.selector = selector
        self.predictor = predictor if predictor else predict_raster
        self.random_state = random_state
        self.grid_cells = get_config_item('SPATIAL_PREDICT', 'GRID_CELLS')
        self.train_fraction = get_config_item('SPATIAL_PREDICT', 'TRAIN_FRACTION')
        self.fast_compare_min_methods = get_config_item('SPATIAL_PREDICT', 'FAST_COMPARE_MIN_METHODS')
        self.fallback_train_rows = get_config_item('SPATIAL_PREDICT', 'FALLBACK_TRAIN_ROWS')
        self.fallback_test_rows = get_config_item('SPATIAL_PREDICT', 'FALLBACK_TEST_ROWS')
        self.worker_processes = get_config_item('SPATIAL_PREDICT', 'WORKER_PROCESSES')

    @contextmanager
    def get_client(self, n_workers: int):
        """Dask worker pool used by the delegated training and prediction calls"""

        with Client(n_workers=n_workers, threads_per_worker=1, processes=self.worker_processes, dashboard_address=None) as client:
            with joblib.parallel_config(backend='dask'):
                yield client

    def get_fast_fraction(self, n_rows: int, fast_fraction: float = None) -> float:
        """Share of rows used to compare methods, shrinking from 1 to 0.1 as the sample grows"""

        if fast_fraction is not None:
            return float(fast_fraction)
        max_rows = get_config_item('SPATIAL_PREDICT', 'FAST_FRACTION_MAX_ROWS')
        min_rows = get_config_item('SPATIAL_PREDICT', 'FAST_FRACTION_MIN_ROWS')
        floor = get_config_item('SPATIAL_PREDICT', 'FAST_FRACTION_FLOOR')
        if n_rows <= max_rows:
            return 1.0
        if n_rows >= min_rows:
            return floor
        return 1 + (floor - 1) * (n_rows - max_rows) / (min_rows - max_rows)

    def fallback_sample(self, table: pd.DataFrame, outcome_col: str, size: int, rng: np.random.Generator) -> pd.DataFrame:
        """Random rows holding at least one row of every outcome category"""

        size = min(size, len(table))
        outcome = table[outcome_col].reset_index(drop=True)
        firsts = [rng.choice(np.flatnonzero((outcome == category).to_numpy()))
                  for category in outcome.dropna().unique()]
        remaining = np.setdiff1d(np.arange(len(table)), firsts)
        extra = rng.choice(remaining, max(size - len(firsts), 0), replace=False)
        return table.iloc[np.sort(np.concatenate([np.asarray(firsts, dtype=int), extra]))].reset_index(drop=True)

    def down_sample(self, table: pd.DataFrame, outcome_col: str, fraction: float, fallback_size: int,
                    rng: np.random.Generator) -> pd.DataFrame:
        """
        Random share of a table for the fast comparison

        When a class of a categorical outcome would be lost, a fixed size
        sample keeping every class is used instead.
        """

        size = int(len(table) * fraction)
        subset = table.iloc[np.sort(rng.choice(len(table), size, replace=False))].reset_index(drop=True)
        if get_task(table[outcome_col]) == CLASSIFICATION:
            categories = set(table[outcome_col].dropna().tolist())
            if set(subset[outcome_col].dropna().tolist()) != categories:
                self.message(f'Down-sampling dropped outcome categories, using {min(fallback_size, len(table))} rows instead')
                subset = self.fallback_sample(table, outcome_col, fallback_size, rng)
        return subset

    def train_method(self, method: str, table: pd.DataFrame, outcome_col: str, control) -> ModelResult:
        """
        Train one method in isolation

        Errors and invalid outputs are recorded on the result instead of
        raised. Every distinct warning message is recorded once.
        """

        result = ModelResult(method)
        self.message(f"Working on model '{method}'")
        model = None
        error = None
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            try:
                model = self.trainer(table, outcome_col, method, control)
            except Exception as e:
                self.logger.debug(f'Training {method} failed', exc_info=True)
                error = str(e)

        for caught_warning in caught:
            content = str(caught_warning.message)
            if content not in result.warnings:
                result.warnings.append(content)
                self.warning(f'Warning while running model {method}: {content}')

        if error is not None:
            result.error = f'Error in model {method}: {error}'
            self.warning(result.error)
        elif not is_trained_model(model):
            result.error = f'Model training failed for {method}: output was not a trained model'
            self.warning(result.error)
        else:
            result.model = model
            self.message(f'Model training complete for {method}')
        return result

    def score_methods(self, model_results: dict, testing_table: pd.DataFrame) -> dict:
        """Score every trained method, a scoring failure fails the method"""

        performance = {}
        for method, result in model_results.items():
            if result.model is None:
                continue
            try:
                result.performance = self.scorer(result.model, testing_table)
                performance[method] = result.performance
            except Exception as e:
                result.model = None
                result.error = f'Error testing model {method}: {e}'
                self.warning(result.error)
        return performance

    def select_best(self, performance: dict, methods: list) -> tuple:
        """
        Pick the method with the highest accuracy

        Ties go to the method listed first.

        :returns tuple: (method name, tie notice or None)
        """

        if not performance:
            raise ModelTrainingException('Every requested method failed, there is no model to select. Check the error messages of each method.')
        accuracy = {method: performance[method].accuracy for method in methods if method in performance}
        scores = {method: value if value is not None and not np.isnan(value) else -np.inf for method, value in accuracy.items()}
        best = max(scores.values())
        tied = [method for method in methods if method in scores and scores[method] == best]
        name = tied[0]
        if len(tied) > 1:
            notice = (f"Models {', '.join(tied)} have the same accuracy. {name} will be selected to train and test "
                      f"on the full dataset, discarding {', '.join(tied[1:])}.")
            self.message(notice)
            return name, notice
        self.message(f"Model selection complete. Selected model '{name}' based on accuracy.")
        return name, None

    def thin(self, training_table: pd.DataFrame, outcome_col: str, predictors: list, n_workers: int) -> tuple:
        """Run the variable selection service and check what it returns"""

        selector = self.selector if self.selector else ThinFeaturesEngine(n_cores=n_workers).select_features
        retained, report = selector(training_table, outcome_col)
        retained = [column for column in predictors if column in set(retained)]
        if not retained:
            raise SpatialPredictException('Variable selection retained no predictors')
        return retained, report

    def run(self, features, outcome: gpd.GeoDataFrame, train_control, methods, poly_sample: int = None,
            fast_compare: bool = True, fast_fraction: float = None, thin_features: bool = True,
            predict: bool = False, n_cores: int = None, save_path: str = None) -> WorkflowResult:
        """
        Predict a spatial variable using machine learning

        Raster values are extracted at the outcome points (polygons are
        sampled with poly_sample stratified points per outcome value) and
        split spatially into training and testing sets by randomly assigning
        70% of the blocks of a 200 x 200 grid over the points to training.
        With several methods, each is trained and the most accurate on the
        testing set is kept. With more than three methods and fast_compare,
        the comparison runs on a share of the rows and the winner is
        retrained on the full training set.

        A categorical outcome column is a classification problem, an integer
        or float column a regression problem.

        :param features: Stacked raster, or list/dict of named rasters, sharing CRS, extent and resolution
        :param gpd.GeoDataFrame outcome: Points or polygons with exactly one attribute column
        :param train_control: TrainControl, or a dict of method name: TrainControl
        :param methods: One method name or a list of them, see model_registry.available_methods()
        :param int poly_sample: Points per unique polygon value when outcome holds polygons
        :param bool fast_compare: Compare more than three methods on down-sampled data
        :param float fast_fraction: Share of rows for the fast comparison, between 0 and 1
        :param bool thin_features: Remove irrelevant predictors with Boruta first
        :param bool predict: Apply the selected model to the full extent of the features
        :param int n_cores: Maximum number of cores, all cores minus one if None
        :param str save_path: Existing folder where the prediction GeoTIFF is written
        :returns WorkflowResult: selected model, performance, per-method logs and optional prediction
        """

        with show_all_warnings():
            if poly_sample is None:
                poly_sample = get_config_item('SPATIAL_PREDICT', 'POLY_SAMPLE')
            inputs = validate_inputs(features, outcome, train_control, methods, poly_sample=poly_sample,
                                     fast_compare=fast_compare, fast_fraction=fast_fraction,
                                     thin_features=thin_features, predict=predict, n_cores=n_cores,
                                     save_path=save_path)
            n_workers = resolve_cores(n_cores)
            rng = np.random.default_rng(self.random_state)
            outcome_col = inputs.outcome_col
            stack = inputs.features
            methods = inputs.methods
            notices = []

            # Sampling and splitting
            points = project_outcome(inputs.outcome, stack)
            if inputs.geometry_type == 'polygons':
                self.message('Sampling the polygons...')
                points = sample_polygons(points, outcome_col, poly_sample, rng)
            self.message("Extracting raster values for each point in 'outcome'...")
            samples = extract_values(stack, points, outcome_col)
            split = spatial_block_split(samples, rng, self.grid_cells, self.train_fraction)
            if split.training.empty or split.testing.empty:
                raise SpatialPredictException('The points are too clustered to split into spatially separate training and testing sets.')
            predictors = [str(name) for name in stack['band'].values]

            with self.get_client(n_workers):
                training_table = model_table(split.training, outcome_col, predictors)
                testing_table = model_table(split.testing, outcome_col, predictors)

                # Feature thinning
                selection_report = None
                if thin_features:
                    self.message('Running Boruta to select only relevant variables...')
                    try:
                        predictors, selection_report = self.thin(training_table, outcome_col, predictors, n_workers)
                        training_table = training_table[[outcome_col] + predictors]
                        testing_table = testing_table[[outcome_col] + predictors]
                    except Exception as e:
                        notice = f'Failed to thin features ({e}). Proceeding to model training step with whole data set.'
                        self.warning(notice)
                        notices.append(notice)
                        selection_report = f'Failed to run: {e}'
                        thin_features = False
                extra_columns = ['cell', split.training.geometry.name]
                training = split.training[[outcome_col] + predictors + extra_columns]
                testing = split.testing[[outcome_col] + predictors + extra_columns]

                # Training and selection
                if len(methods) == 1:
                    method = methods[0]
                    self.message('Training the model...')
                    result = self.train_method(method, training_table, outcome_col, inputs.control_for(method))
                    model_results = {method: result}
                    if result.model is None:
                        content = f'Failed to run model {method} with the dataset and parameters specified. {result.error}'
                        self.log_error(content)
                        raise ModelTrainingException(content)
                    selected_method = method
                    model = result.model
                    try:
                        performance = self.scorer(model, testing_table)
                    except Exception as e:
                        raise ModelTrainingException(f'Failed to test model {method}: {e}') from e
                    result.performance = performance
                    trained_models_performance = {method: performance}
                else:
                    fast = len(methods) > self.fast_compare_min_methods and fast_compare
                    compare_training, compare_testing = training_table, testing_table
                    if fast:
                        fraction = self.get_fast_fraction(len(samples), fast_fraction)
                        compare_training = self.down_sample(training_table, outcome_col, fraction, self.fallback_train_rows, rng)
                        compare_testing = self.down_sample(testing_table, outcome_col, fraction, self.fallback_test_rows, rng)
                        self.message('Training multiple models (on down-sampled training data for speed)...')
                    else:
                        self.message('Training multiple models and finding the best one...')

                    model_results = {}
                    for method in methods:
                        model_results[method] = self.train_method(method, compare_training, outcome_col, inputs.control_for(method))
                    trained_models_performance = self.score_methods(model_results, compare_testing)
                    selected_method, tie_notice = self.select_best(trained_models_performance, methods)
                    if tie_notice:
                        notices.append(tie_notice)

                    model = model_results[selected_method].model
                    performance = trained_models_performance[selected_method]
                    if fast:
                        self.message('Re-training the best model on the full training data set...')
                        retrained = self.train_method(selected_method, training_table, outcome_col, inputs.control_for(selected_method))
                        if retrained.model is None:
                            content = f'Failed to re-train model {selected_method} on the full data set. {retrained.error}'
                            self.log_error(content)
                            raise ModelTrainingException(content)
                        model = retrained.model
                        try:
                            performance = self.scorer(model, testing_table)
                        except Exception as e:
                            raise ModelTrainingException(f'Failed to test model {selected_method}: {e}') from e
                        self.message('Model training complete.')
                self.message(f"Selected model '{selected_method}', tuned parameters: {model.best_params}")

                # Prediction
                prediction = None
                prediction_path = None
                class_lookup = {}
                if predict:
                    predict_stack = stack.sel(band=predictors) if thin_features else stack
                    output_path = None
                    if save_path is not None:
                        output_path = dated_output_path(save_path, get_config_item('SPATIAL_PREDICT', 'OUTPUT_PREFIX'))
                    self.message("Running the model on the full extent of 'features'...")
                    try:
                        prediction = self.predictor(model, predict_stack, output_path)
                        prediction_path = output_path
                        class_lookup = get_class_lookup(model)
                    except Exception as e:
                        notice = (f"Failed to run the model on the full extent of 'features' ({e}). This could be a fault in "
                                  "either running the model or saving the results to disk. Apply the returned model to "
                                  "your predictor variables to retry.")
                        self.warning(notice)
                        notices.append(notice)

            self.message('Finished. Returning results.')
            return WorkflowResult(
                selected_method=selected_method,
                best_model=model,
                selected_model_performance=performance,
                trained_models_performance=trained_models_performance,
                model_results=model_results,
                training=training,
                testing=testing,
                blocks=split.blocks,
                predictors=tuple(predictors),
                selection_report=selection_report,
                prediction=prediction,
                prediction_path=prediction_path,
                class_lookup=class_lookup,
                notices=tuple(notices),
            )

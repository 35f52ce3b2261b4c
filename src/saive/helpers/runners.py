import pathlib
import geopandas as gpd
import pandas as pd
import rioxarray

from saive.engines.CreateStreamsEngine import CreateStreamsEngine
from saive.engines.SpatialPredictEngine import SpatialPredictEngine
from saive.engines.ThinFeaturesEngine import ThinFeaturesEngine, plot_selection_report
from saive.engines.modeling.ModelTrainer import TrainControl


def load_features(feature_paths: dict[str]) -> dict:
    """Open single band rasters keyed by predictor name"""

    return {name: rioxarray.open_rasterio(path, masked=True) for name, path in feature_paths.items()}


def load_outcome(outcome_path: str, outcome_col: str, categorical: bool = False) -> gpd.GeoDataFrame:
    """Read the outcome vector keeping only its attribute column"""

    outcome = gpd.read_file(outcome_path)
    outcome = outcome[[outcome_col, outcome.geometry.name]].copy()
    if categorical:
        outcome[outcome_col] = outcome[outcome_col].astype('category')
    return outcome


def get_train_control(control_config: dict) -> TrainControl | dict:
    """TrainControl, or dict of them, from a run config section"""

    if 'method' in control_config:
        return TrainControl(**control_config)
    return {method: TrainControl(**options) for method, options in control_config.items()}


def run_create_streams(step: dict, output_directory: str) -> None:
    """Entry point for deriving a stream network from a DEM"""

    engine = CreateStreamsEngine()
    engine.run(
        step['dem'],
        step['threshold'],
        vector=step.get('vector'),
        save_path=step.get('save_path', output_directory),
        n_cores=step.get('n_cores'),
        force_update_wbt=step.get('force_update_wbt', False),
        silent_wbt=step.get('silent_wbt', True),
    )


def run_thin_features(step: dict, output_directory: str) -> None:
    """Entry point for Boruta selection on a CSV table"""

    table = pd.read_csv(step['table'])
    outcome_col = step['outcome_col']
    if step.get('categorical', False):
        table[outcome_col] = table[outcome_col].astype('category')
    engine = ThinFeaturesEngine(n_cores=step.get('n_cores'))
    result = engine.run(table, outcome_col)

    output_directory = pathlib.Path(output_directory)
    output_directory.mkdir(parents=True, exist_ok=True)
    result.selection_report.to_csv(output_directory / 'selection_report.csv', index=False)
    plot_selection_report(result.selection_report, output_directory / 'selection_report.png')


def run_spatial_predict(step: dict, output_directory: str):
    """Entry point for training, selecting and applying a spatial prediction model"""

    features = load_features(step['features'])
    outcome = load_outcome(step['outcome'], step['outcome_col'], step.get('categorical', False))
    save_path = step.get('save_path', output_directory)
    pathlib.Path(save_path).mkdir(parents=True, exist_ok=True)

    engine = SpatialPredictEngine(random_state=step.get('random_state'))
    result = engine.run(
        features,
        outcome,
        get_train_control(step['train_control']),
        step['methods'],
        poly_sample=step.get('poly_sample'),
        fast_compare=step.get('fast_compare', True),
        fast_fraction=step.get('fast_fraction'),
        thin_features=step.get('thin_features', True),
        predict=step.get('predict', False),
        n_cores=step.get('n_cores'),
        save_path=save_path,
    )
    performance = pd.DataFrame([
        {'method': method, 'accuracy': summary.accuracy, 'n': summary.n}
        for method, summary in result.trained_models_performance.items()
    ])
    performance.to_csv(pathlib.Path(save_path) / 'model_performance.csv', index=False)
    if isinstance(result.selection_report, pd.DataFrame):
        plot_selection_report(result.selection_report, pathlib.Path(save_path) / 'selection_report.png')
    return result

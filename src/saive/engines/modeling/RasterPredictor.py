"""Apply a fitted model to every cell of a feature stack"""

import pathlib
import numpy as np
import pandas as pd
import xarray as xr
import rioxarray  # noqa: F401  registers the .rio accessor

from saive.engines.modeling.ModelTrainer import ModelHandle
from saive.engines.modeling.model_registry import CLASSIFICATION


def get_class_lookup(model: ModelHandle) -> dict:
    """
    Integer raster codes for the classes of a classification model

    Numeric class labels are written as themselves, other labels are
    numbered from 1 in the order the model knows them.
    """

    if model.task != CLASSIFICATION:
        return {}
    classes = model.classes
    if all(isinstance(label, (int, np.integer)) for label in classes):
        return {int(label): label for label in classes}
    return {code: label for code, label in enumerate(classes, start=1)}


def predict_block(block: np.ndarray, model: ModelHandle, label_codes: dict) -> np.ndarray:
    """
    Predict a block of cells with the band values on the last axis

    Cells missing any predictor value stay NaN.
    """

    cells = block.reshape(-1, block.shape[-1])
    output = np.full(cells.shape[0], np.nan, dtype=np.float32)
    valid = ~np.isnan(cells).any(axis=1)
    if valid.any():
        frame = pd.DataFrame(cells[valid], columns=model.predictors)
        predicted = model.predict(frame)
        if label_codes:
            predicted = np.array([label_codes[label] for label in predicted])
        output[valid] = np.asarray(predicted, dtype=np.float32)
    return output.reshape(block.shape[:-1])


def predict_raster(model: ModelHandle, stack: xr.DataArray, output_path: pathlib.Path = None) -> xr.DataArray:
    """
    Run a fitted model on the full extent of a feature stack

    param ModelHandle model: Fitted model from ModelTrainer.train_model
    param xr.DataArray stack: Stacked features with the predictor names on the band coordinate
    param pathlib.Path output_path: Optional GeoTIFF to write, overwritten if present
    return: Single band DataArray of predictions with the CRS and transform of the stack
    """

    missing = [name for name in model.predictors if name not in stack['band'].values]
    if missing:
        raise ValueError(f'Feature stack is missing predictors: {", ".join(missing)}')
    nodata = stack.rio.nodata
    if nodata is not None and not np.isnan(nodata):
        stack = stack.where(stack != nodata)
    stack = stack.sel(band=model.predictors).astype('float32')
    lookup = get_class_lookup(model)
    label_codes = {label: code for code, label in lookup.items()}

    prediction = xr.apply_ufunc(
        predict_block,
        stack,
        kwargs={'model': model, 'label_codes': label_codes},
        input_core_dims=[['band']],
        dask='parallelized',
        dask_gufunc_kwargs={'allow_rechunk': True},
        output_dtypes=[np.float32],
    )
    prediction = prediction.transpose('y', 'x')
    prediction.name = 'prediction'
    prediction.attrs = {'method': model.method}
    if lookup:
        prediction.attrs['classes'] = ';'.join(f'{code}={label}' for code, label in lookup.items())
    prediction.rio.write_crs(stack.rio.crs, inplace=True)
    prediction.rio.write_transform(stack.rio.transform(), inplace=True)
    prediction.rio.write_nodata(np.nan, encoded=False, inplace=True)

    if output_path is not None:
        prediction.rio.to_raster(output_path, compress='LZW')
    return prediction

"""Checks run on workflow inputs before any expensive work starts"""

import pathlib
import numbers
import numpy as np
import pandas as pd
import geopandas as gpd
import xarray as xr
import rioxarray  # noqa: F401  registers the .rio accessor

from collections.abc import Mapping
from dataclasses import dataclass

from saive.engines.modeling.ModelTrainer import TrainControl


POINT_TYPES = {'Point', 'MultiPoint'}
POLYGON_TYPES = {'Polygon', 'MultiPolygon'}


class InputValidationException(Exception):
    """Custom exception for invalid workflow parameters"""

    pass


@dataclass
class ValidatedInputs:
    """Normalized inputs of the spatial prediction workflow"""

    features: xr.DataArray
    outcome: gpd.GeoDataFrame
    outcome_col: str
    geometry_type: str
    methods: list
    train_control: object
    multi_train_control: bool

    def control_for(self, method: str) -> TrainControl:
        """TrainControl for a method, per-method when a mapping was given"""

        if self.multi_train_control:
            return self.train_control[method]
        return self.train_control


def _squeeze_layer(name: str, layer: xr.DataArray) -> xr.DataArray:
    if not isinstance(layer, xr.DataArray):
        raise InputValidationException(f"Feature '{name}' is not a raster (xarray.DataArray)")
    if 'band' in layer.dims:
        if layer.sizes['band'] != 1:
            raise InputValidationException(f"Feature '{name}' has {layer.sizes['band']} bands, pass single band rasters or one stacked raster")
        layer = layer.isel(band=0, drop=True)
    if set(layer.dims) != {'y', 'x'}:
        raise InputValidationException(f"Feature '{name}' must have y and x dimensions, found {layer.dims}")
    return layer.transpose('y', 'x')


def _band_names(stack: xr.DataArray) -> list:
    names = [str(value) for value in stack['band'].values] if 'band' in stack.coords else []
    if names and all(isinstance(value, str) for value in stack['band'].values):
        return names
    long_name = stack.attrs.get('long_name')
    if isinstance(long_name, (list, tuple)) and len(long_name) == stack.sizes['band']:
        return [str(value) for value in long_name]
    if isinstance(long_name, str) and stack.sizes['band'] == 1:
        return [long_name]
    raise InputValidationException("Looks like the feature stack has unnamed layers. Name the band coordinate, names please.")


def check_unique(names: list) -> None:
    if any(name is None or str(name) == '' for name in names):
        raise InputValidationException("Looks like you're giving me unnamed features. Names please.")
    if len(set(names)) != len(names):
        raise InputValidationException('The names of the features must be unique.')


def stack_features(features) -> xr.DataArray:
    """
    Normalize features to a single stacked raster

    Accepts a list of named DataArrays, a dict of name: DataArray, or an
    already stacked DataArray with a band dimension. All layers must share
    the same CRS, shape and transform.

    :returns xr.DataArray: dims (band, y, x) with layer names on the band coordinate
    """

    if isinstance(features, xr.DataArray):
        if 'band' not in features.dims:
            layer = _squeeze_layer(features.name, features)
            names = [features.name]
            check_unique(names)
            stack = layer.expand_dims(band=names)
        else:
            names = _band_names(features)
            check_unique(names)
            stack = features.assign_coords(band=names).transpose('band', 'y', 'x')
        if stack.rio.crs is None:
            raise InputValidationException('The features do not have a coordinate reference system.')
        return stack

    if isinstance(features, Mapping):
        names = list(features.keys())
        layers = list(features.values())
    elif isinstance(features, (list, tuple)):
        layers = list(features)
        names = [getattr(layer, 'name', None) for layer in layers]
    else:
        raise InputValidationException("'features' must be a stacked raster or a list/dict of named rasters.")
    if not layers:
        raise InputValidationException("'features' is empty.")
    check_unique(names)
    names = [str(name) for name in names]

    layers = [_squeeze_layer(name, layer) for name, layer in zip(names, layers)]
    first = layers[0]
    if first.rio.crs is None:
        raise InputValidationException('The features do not have a coordinate reference system.')
    for name, layer in zip(names[1:], layers[1:]):
        if layer.rio.crs != first.rio.crs:
            raise InputValidationException(f"The features you specified do not have the same coordinate reference system ('{name}' differs from '{names[0]}').")
        if layer.shape != first.shape or not layer.rio.transform().almost_equals(first.rio.transform()):
            raise InputValidationException(f"The features you specified do not have the exact same extents ('{name}' differs from '{names[0]}').")

    # layers may carry different sentinels, so each is masked before stacking
    masked = False
    for i, layer in enumerate(layers):
        nodata = layer.rio.nodata
        if nodata is not None:
            masked = True
            if not np.isnan(nodata):
                layers[i] = layer.where(layer != nodata)

    stack = xr.concat(layers, dim=pd.Index(names, name='band'), join='override', combine_attrs='drop')
    stack.rio.write_crs(first.rio.crs, inplace=True)
    stack.rio.write_transform(first.rio.transform(), inplace=True)
    if masked:
        stack.rio.write_nodata(np.nan, encoded=False, inplace=True)
    return stack


def check_outcome(outcome) -> tuple:
    """
    Check the outcome vector and return its attribute column and geometry type

    :returns tuple: (column name, "points" | "polygons")
    """

    if not isinstance(outcome, gpd.GeoDataFrame):
        raise InputValidationException("The parameter 'outcome' must be a GeoDataFrame (points or polygons).")
    columns = [column for column in outcome.columns if column != outcome.geometry.name]
    if len(columns) != 1:
        raise InputValidationException('Looks like the attribute table for the outcome does not contain exactly one column.')
    outcome_col = columns[0]

    dtype = outcome[outcome_col].dtype
    categorical = isinstance(dtype, pd.CategoricalDtype)
    integer = pd.api.types.is_integer_dtype(dtype) and not pd.api.types.is_bool_dtype(dtype)
    if not (categorical or integer or pd.api.types.is_float_dtype(dtype)):
        raise InputValidationException('The outcome variable should be categorical, integer, or float.')

    if outcome.empty:
        raise InputValidationException("The parameter 'outcome' has no features.")
    if outcome.crs is None:
        raise InputValidationException("The parameter 'outcome' does not have a coordinate reference system.")
    geom_types = set(outcome.geom_type.dropna())
    if geom_types and geom_types <= POINT_TYPES:
        return outcome_col, 'points'
    if geom_types and geom_types <= POLYGON_TYPES:
        return outcome_col, 'polygons'
    raise InputValidationException("'outcome' can only be a GeoDataFrame of points or polygons.")


def check_methods(methods) -> list:
    if isinstance(methods, str):
        methods = [methods]
    methods = list(methods) if methods is not None else []
    if not methods or not all(isinstance(method, str) and method for method in methods):
        raise InputValidationException("'methods' must be one or more method names.")
    if len(set(methods)) != len(methods):
        raise InputValidationException("'methods' contains duplicate method names.")
    return methods


def check_train_control(train_control, methods: list) -> bool:
    """
    Check the TrainControl or mapping of method: TrainControl against methods

    :returns bool: True when a per-method mapping is used
    """

    if isinstance(train_control, TrainControl):
        return False
    if not isinstance(train_control, Mapping) or not all(isinstance(control, TrainControl) for control in train_control.values()):
        raise InputValidationException("'train_control' must be a TrainControl or a mapping of method names to TrainControl objects.")

    if len(methods) > 1:
        if set(train_control.keys()) != set(methods):
            raise InputValidationException(
                "It looks like you are specifying multiple model types in 'methods' along with multiple versions "
                "of train_control, but the names of both don't match.")
        return True
    if len(train_control) > 1:
        raise InputValidationException(
            "It looks like you're specifying multiple train_control objects, but only a single model in 'methods'.")
    if list(train_control.keys()) != methods:
        raise InputValidationException("The train_control name does not match the method in 'methods'.")
    return True


def check_flag(name: str, value) -> None:
    if not isinstance(value, bool):
        raise InputValidationException(f"The parameter '{name}' must be a boolean.")


def check_positive_int(name: str, value, optional: bool = False) -> None:
    if value is None and optional:
        return
    if isinstance(value, bool) or not isinstance(value, numbers.Integral) or value < 1:
        raise InputValidationException(f"The parameter '{name}' must be a positive integer.")


def validate_inputs(features, outcome, train_control, methods, poly_sample=1000, fast_compare=True,
                    fast_fraction=None, thin_features=True, predict=False, n_cores=None, save_path=None) -> ValidatedInputs:
    """Run every check and return the normalized inputs"""

    if save_path is not None and not pathlib.Path(save_path).is_dir():
        raise InputValidationException(
            'The specified directory does not exist. Please create it before pointing to it, or run the function without a save path.')
    check_flag('thin_features', thin_features)
    check_flag('predict', predict)
    check_flag('fast_compare', fast_compare)
    if fast_fraction is not None:
        if isinstance(fast_fraction, bool) or not isinstance(fast_fraction, numbers.Real) or not 0 <= fast_fraction <= 1:
            raise InputValidationException("The parameter 'fast_fraction' must be a numeric value between 0 and 1.")
    check_positive_int('poly_sample', poly_sample)
    check_positive_int('n_cores', n_cores, optional=True)

    methods = check_methods(methods)
    multi_train_control = check_train_control(train_control, methods)
    outcome_col, geometry_type = check_outcome(outcome)
    stack = stack_features(features)
    if outcome_col in list(stack['band'].values):
        raise InputValidationException(f"The outcome column '{outcome_col}' has the same name as one of the features.")

    return ValidatedInputs(stack, outcome, outcome_col, geometry_type, methods, train_control, multi_train_control)

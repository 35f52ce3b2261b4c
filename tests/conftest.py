import os
import sys
import pathlib
import pytest
import numpy as np
import pandas as pd
import geopandas as gpd
import xarray as xr
import rioxarray  # noqa: F401

SAIVE_MODULE = pathlib.Path(__file__).parents[1] / 'src'
sys.path.append(str(SAIVE_MODULE))
os.environ.setdefault('SAIVE_ENV', 'local')


CRS = 'EPSG:32617'
ORIGIN_X = 500000.0
ORIGIN_Y = 4000000.0
CELL = 10.0
SIZE = 50


def make_layer(values: np.ndarray, name: str) -> xr.DataArray:
    """Single band raster on the shared test grid"""

    rows, cols = values.shape
    layer = xr.DataArray(
        values.astype('float32'),
        dims=('y', 'x'),
        coords={
            'y': ORIGIN_Y - CELL * (np.arange(rows) + 0.5),
            'x': ORIGIN_X + CELL * (np.arange(cols) + 0.5),
        },
        name=name,
    )
    return layer.rio.write_crs(CRS)


@pytest.fixture
def layers():
    rng = np.random.default_rng(7)
    cols = np.tile(np.arange(SIZE), (SIZE, 1))
    rows = cols.T
    return [
        make_layer(cols * 2.0, 'elevation'),
        make_layer(rows * 0.5, 'slope'),
        make_layer(rng.normal(size=(SIZE, SIZE)), 'noise'),
    ]


@pytest.fixture
def stack(layers):
    from saive.helpers.validation import stack_features

    return stack_features(layers)


@pytest.fixture
def points():
    """500 points, three balanced classes banded west to east"""

    rng = np.random.default_rng(11)
    xs = ORIGIN_X + rng.uniform(0, SIZE * CELL, 500)
    ys = ORIGIN_Y - rng.uniform(0, SIZE * CELL, 500)
    order = np.argsort(xs)
    labels = np.empty(500, dtype=object)
    labels[order[:167]] = 'sand'
    labels[order[167:334]] = 'mud'
    labels[order[334:]] = 'rock'
    return gpd.GeoDataFrame(
        {'substrate': pd.Categorical(labels, categories=['mud', 'rock', 'sand'])},
        geometry=gpd.points_from_xy(xs, ys),
        crs=CRS,
    )


@pytest.fixture
def classification_table():
    rng = np.random.default_rng(3)
    x0 = rng.normal(size=150)
    return pd.DataFrame({
        'label': pd.Categorical(np.where(x0 > 0.3, 'high', np.where(x0 < -0.3, 'low', 'mid'))),
        'x0': x0,
        'x1': rng.normal(size=150),
    })


@pytest.fixture
def regression_table():
    rng = np.random.default_rng(5)
    x0 = rng.uniform(0, 10, 120)
    return pd.DataFrame({
        'depth': 3.0 * x0 + rng.normal(scale=0.5, size=120),
        'x0': x0,
        'x1': rng.normal(size=120),
    })

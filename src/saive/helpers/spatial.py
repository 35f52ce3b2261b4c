"""Sampling of the outcome vector and spatially blocked train/test split"""

import numpy as np
import pandas as pd
import geopandas as gpd
import xarray as xr
import rasterio
import rioxarray  # noqa: F401  registers the .rio accessor

from dataclasses import dataclass
from shapely.geometry import box


@dataclass
class SpatialSplit:
    """Training and testing points plus the grid blocks they were assigned from"""

    training: gpd.GeoDataFrame
    testing: gpd.GeoDataFrame
    blocks: gpd.GeoDataFrame


def project_outcome(outcome: gpd.GeoDataFrame, stack: xr.DataArray) -> gpd.GeoDataFrame:
    """Make sure the outcome has the same CRS as the features"""

    return outcome.to_crs(stack.rio.crs.to_wkt())


def sample_polygons(outcome: gpd.GeoDataFrame, outcome_col: str, size: int, rng: np.random.Generator) -> gpd.GeoDataFrame:
    """
    Stratified random points from polygons

    Draws size points inside the polygons of each unique outcome value.
    """

    dissolved = outcome.dissolve(by=outcome_col, observed=True)
    points = dissolved.geometry.sample_points(size=size, rng=rng)
    samples = gpd.GeoDataFrame(
        {outcome_col: pd.Series(points.index, dtype=outcome[outcome_col].dtype)},
        geometry=list(points.values),
        crs=outcome.crs,
    )
    return samples.explode(index_parts=False).reset_index(drop=True)


def extract_values(stack: xr.DataArray, points: gpd.GeoDataFrame, outcome_col: str) -> gpd.GeoDataFrame:
    """
    Raster values of every feature at every point

    Points outside the stack or on nodata cells get NaN.

    :returns gpd.GeoDataFrame: outcome column, one column per feature, geometry
    """

    points = points.explode(index_parts=False).reset_index(drop=True)
    names = [str(name) for name in stack['band'].values]
    height, width = stack.sizes['y'], stack.sizes['x']
    rows, cols = rasterio.transform.rowcol(stack.rio.transform(), points.geometry.x.to_numpy(), points.geometry.y.to_numpy())
    rows = np.atleast_1d(np.asarray(rows))
    cols = np.atleast_1d(np.asarray(cols))
    inside = (rows >= 0) & (rows < height) & (cols >= 0) & (cols < width)

    values = np.full((len(points), len(names)), np.nan)
    if inside.any():
        cells = stack.isel(
            y=xr.DataArray(rows[inside], dims='points'),
            x=xr.DataArray(cols[inside], dims='points'),
        ).transpose('points', 'band')
        cell_values = cells.values.astype(float)
        nodata = stack.rio.nodata
        if nodata is not None and not np.isnan(nodata):
            cell_values[cell_values == nodata] = np.nan
        values[inside] = cell_values

    table = pd.DataFrame(values, columns=names, index=points.index)
    table.insert(0, outcome_col, points[outcome_col])
    return gpd.GeoDataFrame(table, geometry=points.geometry, crs=points.crs)


def spatial_block_split(samples: gpd.GeoDataFrame, rng: np.random.Generator, grid_cells: int = 200,
                        train_fraction: float = 0.7) -> SpatialSplit:
    """
    Split points into training and testing sets by grid block

    A grid_cells x grid_cells grid covers the convex hull of the points.
    A train_fraction share of the blocks holding points is drawn at random
    for training, the rest are for testing, and every point follows its
    block. Neighbouring points therefore mostly share a partition.

    :param gpd.GeoDataFrame samples: Points with extracted values
    :param np.random.Generator rng: Random generator for the block draw
    :param int grid_cells: Number of grid rows and columns
    :param float train_fraction: Share of blocks assigned to training
    :returns SpatialSplit: training and testing points, active blocks
    """

    hull = samples.geometry.union_all().convex_hull
    minx, miny, maxx, maxy = hull.bounds
    dx = (maxx - minx) / grid_cells or 1.0
    dy = (maxy - miny) / grid_cells or 1.0

    xs = samples.geometry.x.to_numpy()
    ys = samples.geometry.y.to_numpy()
    grid_col = np.clip(np.floor((xs - minx) / dx).astype(int), 0, grid_cells - 1)
    grid_row = np.clip(np.floor((maxy - ys) / dy).astype(int), 0, grid_cells - 1)
    cell = grid_row * grid_cells + grid_col

    active_cells = np.unique(cell)
    train_cells = rng.choice(active_cells, int(round(len(active_cells) * train_fraction)), replace=False)
    is_training = np.isin(cell, train_cells)

    samples = samples.assign(cell=cell)
    block_row, block_col = np.divmod(active_cells, grid_cells)
    blocks = gpd.GeoDataFrame(
        {
            'cell': active_cells,
            'partition': np.where(np.isin(active_cells, train_cells), 'training', 'testing'),
        },
        geometry=[box(minx + c * dx, maxy - (r + 1) * dy, minx + (c + 1) * dx, maxy - r * dy)
                  for r, c in zip(block_row, block_col)],
        crs=samples.crs,
    )
    return SpatialSplit(samples[is_training].copy(), samples[~is_training].copy(), blocks)


def model_table(points: gpd.GeoDataFrame, outcome_col: str, predictors: list) -> pd.DataFrame:
    """Plain table for modeling: outcome first, then predictors"""

    return pd.DataFrame(points[[outcome_col] + list(predictors)]).reset_index(drop=True)

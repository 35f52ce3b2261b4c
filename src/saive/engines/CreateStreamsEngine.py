import os
import shutil
import pathlib
import tempfile
import rasterio
import geopandas as gpd
import xarray as xr
import rioxarray

from dataclasses import dataclass

from saive.engines.Engine import Engine
from saive.helpers.tools import get_config_item, resolve_cores


VECTOR_OPTIONS = ['env', 'gpkg', 'shp']


class CreateStreamsException(Exception):
    """Custom exception for tool"""

    pass


@dataclass
class StreamsResult:
    flow_accum: xr.DataArray
    flow_dir: xr.DataArray
    streams_derived: xr.DataArray
    streams_vector: gpd.GeoDataFrame = None


class CreateStreamsEngine(Engine):
    """Class to hold the logic for deriving a stream network from a DEM with WhiteboxTools"""

    def __init__(self):
        super().__init__()
        self.flow_accumulation = get_config_item('STREAMS', 'FLOW_ACCUMULATION')
        self.flow_direction = get_config_item('STREAMS', 'FLOW_DIRECTION')
        self.streams_raster = get_config_item('STREAMS', 'STREAMS_RASTER')
        self.streams_vector = get_config_item('STREAMS', 'STREAMS_VECTOR')

    def get_whitebox(self, force_update: bool = False):
        """Obtain a WhiteboxTools runner, downloading the binary if needed"""

        from whitebox.whitebox_tools import WhiteboxTools, download_wbt

        if force_update:
            download_wbt(reset=True, verbose=False)
        return WhiteboxTools()

    def get_scratch_folder(self) -> pathlib.Path:
        """Empty scratch folder in the system temp directory"""

        scratch = pathlib.Path(tempfile.gettempdir()) / get_config_item('STREAMS', 'SCRATCH_FOLDER')
        if scratch.exists():
            shutil.rmtree(scratch, ignore_errors=True)
        scratch.mkdir(parents=True, exist_ok=True)
        return scratch

    def prepare_dem(self, dem, save_path: str = None) -> tuple:
        """
        Resolve the DEM file and the folder outputs are written to

        A DataArray is written to the scratch folder first. Outputs go to
        save_path when given, otherwise next to a DEM file or in the scratch
        folder for a DataArray.
        """

        if isinstance(dem, xr.DataArray):
            scratch = self.get_scratch_folder()
            dem_path = scratch / 'rast.tif'
            dem.rio.to_raster(dem_path)
            directory = pathlib.Path(save_path) if save_path else scratch
        elif isinstance(dem, (str, os.PathLike)):
            dem_path = pathlib.Path(dem)
            if not dem_path.is_file():
                raise CreateStreamsException(f'DEM file does not exist: {dem_path}')
            directory = pathlib.Path(save_path) if save_path else dem_path.parent
        else:
            raise CreateStreamsException('Parameter dem must be either a raster DataArray or a path to a raster.')
        directory.mkdir(parents=True, exist_ok=True)
        return dem_path, directory

    def run_tool(self, name: str, return_code: int) -> None:
        """WhiteboxTools returns 0 on success"""

        if return_code != 0:
            content = f'WhiteboxTools {name} failed with return code {return_code}'
            self.log_error(content)
            raise CreateStreamsException(content)

    def vectorize_streams(self, wbt, directory: pathlib.Path, crs, vector: str, save_path: str = None) -> gpd.GeoDataFrame:
        """Convert the streams raster to lines, saved to disk for gpkg/shp when save_path is given"""

        lines_path = directory / f'{self.streams_vector}_lines.shp'
        self.run_tool('raster_streams_to_vector', wbt.raster_streams_to_vector(
            streams=str(directory / self.streams_raster),
            d8_pntr=str(directory / self.flow_direction),
            output=str(lines_path),
        ))
        streams_vector = gpd.read_file(lines_path)
        streams_vector = streams_vector.set_crs(crs, allow_override=True)
        if save_path and vector == 'gpkg':
            streams_vector.to_file(directory / f'{self.streams_vector}.gpkg', driver='GPKG')
        elif save_path and vector == 'shp':
            streams_vector.to_file(directory / f'{self.streams_vector}.shp')
        return streams_vector

    def run(self, dem, threshold: int, vector: str = None, save_path: str = None, n_cores: int = None,
            force_update_wbt: bool = False, silent_wbt: bool = True) -> StreamsResult:
        """
        Create a stream network from a DEM

        Wraps the WhiteboxTools D8 flow accumulation, D8 pointer and
        extract streams tools. It is usually advisable to hydro-process the
        DEM first to remove depressions which break continuous flow.

        :param dem: Path to a GeoTIFF DEM or a rioxarray DataArray
        :param int threshold: Flow accumulation in cells needed to start a stream
        :param str vector: None for no vector, "env" to only return it, "gpkg" or "shp" to also save it
        :param str save_path: Optional folder for the outputs
        :param int n_cores: Maximum number of cores, all cores minus one if None
        :param bool force_update_wbt: Download the WhiteboxTools binary even if one is found
        :param bool silent_wbt: Suppress WhiteboxTools messages
        :returns StreamsResult: flow accumulation, flow direction and streams rasters, optional stream lines
        """

        if vector is not None and vector not in VECTOR_OPTIONS:
            raise CreateStreamsException(f"Check your value for parameter 'vector', use None or one of {VECTOR_OPTIONS}.")

        wbt = self.get_whitebox(force_update_wbt)
        wbt.set_verbose_mode(not silent_wbt)
        if n_cores is not None:
            wbt.set_max_procs(resolve_cores(n_cores))

        dem_path, directory = self.prepare_dem(dem, save_path)
        with rasterio.open(dem_path) as dem_ds:
            crs = dem_ds.crs.to_wkt() if dem_ds.crs else None

        with rasterio.Env(GDAL_CACHEMAX=get_config_item('STREAMS', 'GDAL_CACHEMAX')):
            self.message('Calculating a flow accumulation raster...')
            self.run_tool('d8_flow_accumulation', wbt.d8_flow_accumulation(
                str(dem_path), str(directory / self.flow_accumulation), out_type='cells'))

            self.message('Calculating a flow directions raster...')
            self.run_tool('d8_pointer', wbt.d8_pointer(
                str(dem_path), str(directory / self.flow_direction)))

            # threshold is in cells of flow accumulation
            self.message('Creating a raster of streams based on the flow accumulation raster...')
            self.run_tool('extract_streams', wbt.extract_streams(
                str(directory / self.flow_accumulation), str(directory / self.streams_raster), threshold))

            streams_vector = None
            if vector is not None:
                try:
                    streams_vector = self.vectorize_streams(wbt, directory, crs, vector, save_path)
                except Exception as e:
                    self.warning(f'Failed to vectorize the derived streams raster: {e}')

        return StreamsResult(
            flow_accum=rioxarray.open_rasterio(directory / self.flow_accumulation, masked=True),
            flow_dir=rioxarray.open_rasterio(directory / self.flow_direction, masked=True),
            streams_derived=rioxarray.open_rasterio(directory / self.streams_raster, masked=True),
            streams_vector=streams_vector,
        )

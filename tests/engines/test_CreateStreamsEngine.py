import pytest
import numpy as np
import geopandas as gpd
import rasterio
import rioxarray

from shapely.geometry import LineString

from conftest import ORIGIN_X, ORIGIN_Y, make_layer
from saive.engines.CreateStreamsEngine import CreateStreamsEngine, CreateStreamsException
from saive.helpers.tools import get_config_item


class FakeWhiteboxTools:
    """Stands in for the WhiteboxTools binary, writing copies of the input raster"""

    def __init__(self, fail=None, vector_fails=False):
        self.fail = fail
        self.vector_fails = vector_fails
        self.verbose = True
        self.max_procs = -1
        self.calls = []

    def set_verbose_mode(self, val=True):
        self.verbose = val

    def set_max_procs(self, val=-1):
        self.max_procs = val

    def _copy(self, name, source, output, scale=1.0):
        self.calls.append(name)
        if name == self.fail:
            return 1
        raster = rioxarray.open_rasterio(source)
        (raster * scale).rio.to_raster(output)
        return 0

    def d8_flow_accumulation(self, i, output, out_type='cells'):
        assert out_type == 'cells'
        return self._copy('d8_flow_accumulation', i, output, 10.0)

    def d8_pointer(self, dem, output):
        return self._copy('d8_pointer', dem, output)

    def extract_streams(self, flow_accum, output, threshold):
        self.threshold = threshold
        return self._copy('extract_streams', flow_accum, output)

    def raster_streams_to_vector(self, streams, d8_pntr, output):
        self.calls.append('raster_streams_to_vector')
        if self.vector_fails:
            raise RuntimeError('no streams')
        lines = gpd.GeoDataFrame({'STRM_VAL': [1]}, geometry=[LineString([(ORIGIN_X, ORIGIN_Y - 5), (ORIGIN_X + 100, ORIGIN_Y - 5)])])
        lines.to_file(output)
        return 0


@pytest.fixture
def victim():
    return CreateStreamsEngine()


@pytest.fixture
def dem():
    rows = np.tile(np.arange(20), (20, 1)).T
    return make_layer(100.0 - rows, 'dem')


@pytest.fixture
def dem_path(dem, tmp_path):
    path = tmp_path / 'dem.tif'
    dem.rio.to_raster(path)
    return path


def test_prepare_dem_path(victim, dem_path, tmp_path):
    result = victim.prepare_dem(dem_path)
    assert result == (dem_path, tmp_path)

    result = victim.prepare_dem(str(dem_path), tmp_path / 'outputs')
    assert result == (dem_path, tmp_path / 'outputs')
    assert (tmp_path / 'outputs').is_dir()


def test_prepare_dem_array(victim, dem, tmp_path, monkeypatch):
    scratch = tmp_path / 'scratch'
    scratch.mkdir()
    monkeypatch.setattr(victim, 'get_scratch_folder', lambda: scratch)
    dem_path, directory = victim.prepare_dem(dem)
    assert dem_path == scratch / 'rast.tif'
    assert dem_path.exists()
    assert directory == scratch


def test_prepare_dem_errors(victim, tmp_path):
    with pytest.raises(CreateStreamsException, match='does not exist'):
        victim.prepare_dem(tmp_path / 'missing.tif')
    with pytest.raises(CreateStreamsException, match='DataArray or a path'):
        victim.prepare_dem(42)


def test_get_scratch_folder(victim):
    result = victim.get_scratch_folder()
    (result / 'old.tif').write_text('stale')
    result = victim.get_scratch_folder()
    assert result.is_dir()
    assert not list(result.iterdir())


def test_run(victim, dem_path, tmp_path, monkeypatch):
    wbt = FakeWhiteboxTools()
    monkeypatch.setattr(victim, 'get_whitebox', lambda force_update=False: wbt)
    save_path = tmp_path / 'streams'
    result = victim.run(dem_path, 500, vector='gpkg', save_path=save_path, n_cores=1)

    assert wbt.calls == ['d8_flow_accumulation', 'd8_pointer', 'extract_streams', 'raster_streams_to_vector']
    assert wbt.threshold == 500
    assert wbt.verbose is False
    assert wbt.max_procs == 1
    for name in ['D8fac.tif', 'D8pointer.tif', 'streams_derived.tif', 'streams_vector.gpkg']:
        assert (save_path / name).exists()
    assert result.flow_accum.rio.crs.to_epsg() == 32617
    assert float(result.flow_accum.max()) == 1000.0
    assert result.streams_vector.crs.to_epsg() == 32617
    assert len(result.streams_vector) == 1


def test_run_gdal_cache(victim, dem_path, monkeypatch):
    class CacheWhiteboxTools(FakeWhiteboxTools):
        def d8_pointer(self, dem, output):
            self.options = rasterio.env.getenv()
            return super().d8_pointer(dem, output)

    cache = get_config_item('STREAMS', 'GDAL_CACHEMAX')
    assert isinstance(cache, int)
    wbt = CacheWhiteboxTools()
    monkeypatch.setattr(victim, 'get_whitebox', lambda force_update=False: wbt)
    victim.run(dem_path, 100)
    assert wbt.options['GDAL_CACHEMAX'] == cache


def test_run_without_vector(victim, dem_path, monkeypatch):
    wbt = FakeWhiteboxTools()
    monkeypatch.setattr(victim, 'get_whitebox', lambda force_update=False: wbt)
    result = victim.run(dem_path, 100, silent_wbt=False)
    assert 'raster_streams_to_vector' not in wbt.calls
    assert wbt.verbose is True
    assert wbt.max_procs == -1
    assert result.streams_vector is None
    assert (dem_path.parent / 'streams_derived.tif').exists()


def test_run_env_vector_not_saved(victim, dem_path, tmp_path, monkeypatch):
    monkeypatch.setattr(victim, 'get_whitebox', lambda force_update=False: FakeWhiteboxTools())
    result = victim.run(dem_path, 100, vector='env', save_path=tmp_path / 'env')
    assert result.streams_vector is not None
    assert not (tmp_path / 'env' / 'streams_vector.gpkg').exists()


def test_run_vectorize_failure(victim, dem_path, monkeypatch, caplog):
    monkeypatch.setattr(victim, 'get_whitebox', lambda force_update=False: FakeWhiteboxTools(vector_fails=True))
    result = victim.run(dem_path, 100, vector='shp')
    assert result.streams_vector is None
    assert result.streams_derived is not None
    assert 'Failed to vectorize' in caplog.text


def test_run_tool_failure(victim, dem_path, monkeypatch):
    monkeypatch.setattr(victim, 'get_whitebox', lambda force_update=False: FakeWhiteboxTools(fail='d8_pointer'))
    with pytest.raises(CreateStreamsException, match='d8_pointer failed'):
        victim.run(dem_path, 100)


def test_run_invalid_vector(victim, dem_path, monkeypatch):
    wbt = FakeWhiteboxTools()
    monkeypatch.setattr(victim, 'get_whitebox', lambda force_update=False: wbt)
    with pytest.raises(CreateStreamsException, match="parameter 'vector'"):
        victim.run(dem_path, 100, vector='kml')
    assert not wbt.calls

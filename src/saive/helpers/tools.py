import os
import sys
import yaml
import logging
import pathlib
import warnings
import multiprocessing as mp

from contextlib import contextmanager
from datetime import date
from socket import gethostname


INPUTS = pathlib.Path(__file__).parents[1] / 'inputs'
LOG_FORMAT = '%(levelname)s:%(asctime)s %(message)s'


def dated_output_path(output_folder: str, prefix: str, suffix: str = '.tif') -> pathlib.Path:
    """Build a file path stamped with the current date, ie: Prediction_2024-05-01.tif"""

    return pathlib.Path(output_folder) / f'{prefix}_{date.today().isoformat()}{suffix}'


def get_environment() -> str:
    """Determine current environment running code"""

    env = os.environ.get('SAIVE_ENV')
    if env:
        return env
    hostname = gethostname()
    if hostname.startswith('VS'):
        return 'remote'
    return 'local'


def get_config_item(parent: str, child: str=False, env_string: str=False) -> str:
    """
    Load config and return specific key
    :param str parent: Primary key in config
    :param str child: Secondary key in config
    :param str env_string: Optional explicit value of "local" or "remote"
    :returns str: Value from local or remote YAML config
    """

    env = env_string if env_string else None
    if env is None:
        env = get_environment()

    with open(str(INPUTS / 'lookups' / f'{env}_path_config.yaml'), 'r') as lookup:
        config = yaml.safe_load(lookup)
        parent_item = config[parent]
        if child:
            return parent_item[child]
        else:
            return parent_item


def resolve_cores(n_cores: int = None) -> int:
    """
    Number of worker processes to use

    All detected cores minus one unless a smaller count is requested.
    A request above the detected count falls back to the default.
    """

    cores = mp.cpu_count()
    default = max(cores - 1, 1)
    if n_cores is None or n_cores > cores:
        return default
    return max(int(n_cores), 1)


def setup_logging(log_path: str = None, level: int = logging.INFO) -> logging.Logger:
    """Configure console and optional file logging for the saive package"""

    logger = logging.getLogger('saive')
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)
    if not any(isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler)
               for handler in logger.handlers):
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        logger.addHandler(console)
    if log_path:
        file_handler = logging.FileHandler(log_path, mode='a')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


def warning_filters_restorable() -> bool:
    """Check that the global warning filters can be read and written back unchanged"""

    try:
        current = list(warnings.filters)
        warnings.filters[:] = current
        return list(warnings.filters) == current
    except Exception:
        return False


@contextmanager
def show_all_warnings():
    """
    Show every warning as it occurs for the duration of the block

    The previous filter list is put back on every exit path. Nothing is
    modified when the filters cannot be restored.
    """

    if not warning_filters_restorable():
        yield False
        return
    with warnings.catch_warnings():
        warnings.simplefilter('always')
        yield True

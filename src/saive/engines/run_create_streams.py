import argparse
import pathlib
import time
import sys
import yaml

SAIVE = pathlib.Path(__file__).parents[2]
sys.path.append(str(SAIVE))

from saive.helpers import tools, runners
from saive.engines.run_spatial_predict import update_config_runtime


INPUTS = pathlib.Path(__file__).parents[1] / 'inputs'


def run_create_streams(config_path: pathlib.Path) -> None:
    start = time.time()
    output_directory = pathlib.Path(tools.get_config_item('SHARED', 'OUTPUT_FOLDER'))
    output_directory.mkdir(parents=True, exist_ok=True)
    logger = tools.setup_logging(output_directory / tools.get_config_item('SHARED', 'LOG_FILE'))

    with open(config_path, 'r') as lookup:
        config = yaml.safe_load(lookup)
    logger.info(f'Script has been run {len(config["runtimes"])} time(s)')
    for step in config['steps']:
        if step['tool'] == 'run_create_streams' and step['run']:
            runners.run_create_streams(step, output_directory)

    update_config_runtime(config_path, config)
    logger.info(f'Total Runtime: {(time.time() - start) / 60}')


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Derive a stream network from a DEM with WhiteboxTools')
    parser.add_argument('config', nargs='?', default=str(INPUTS / 'run_configs' / 'create_streams.yaml'),
                        help='Path to a run config YAML file')
    args = parser.parse_args()
    run_create_streams(pathlib.Path(args.config))

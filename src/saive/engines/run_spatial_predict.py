import argparse
import pathlib
import time
import sys
import yaml

from datetime import datetime

SAIVE = pathlib.Path(__file__).parents[2]
sys.path.append(str(SAIVE))

from saive.helpers import tools, runners


INPUTS = pathlib.Path(__file__).parents[1] / 'inputs'


def run_spatial_predict(config_path: pathlib.Path) -> None:
    start = time.time()
    env = tools.get_environment()
    output_directory = pathlib.Path(tools.get_config_item('SHARED', 'OUTPUT_FOLDER'))
    output_directory.mkdir(parents=True, exist_ok=True)
    logger = tools.setup_logging(output_directory / tools.get_config_item('SHARED', 'LOG_FILE'))
    logger.info(f'Environment: {env}')
    logger.info(f'Output folder: {output_directory}')

    with open(config_path, 'r') as lookup:
        config = yaml.safe_load(lookup)
    logger.info(f'Script has been run {len(config["runtimes"])} time(s)')
    for step in config['steps']:
        if step['tool'] == 'run_spatial_predict' and step['run']:
            result = runners.run_spatial_predict(step, output_directory)
            logger.info(f'Selected model: {result.selected_method}, accuracy: {result.selected_model_performance.accuracy}')
        elif step['tool'] == 'run_thin_features' and step['run']:
            runners.run_thin_features(step, output_directory)

    update_config_runtime(config_path, config)
    logger.info(f'Total Runtime: {(time.time() - start) / 60}')


def update_config_runtime(config_path: pathlib.Path, config: dict[list]) -> None:
    """Update run config with run time"""

    with open(config_path, 'w') as config_file:
        timestamp = datetime.now().strftime('%m%d%Y')
        config['runtimes'].append(str(timestamp))
        yaml.safe_dump(config, config_file, sort_keys=False)


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Train, select and apply a spatial prediction model')
    parser.add_argument('config', nargs='?', default=str(INPUTS / 'run_configs' / 'spatial_predict.yaml'),
                        help='Path to a run config YAML file')
    args = parser.parse_args()
    run_spatial_predict(pathlib.Path(args.config))

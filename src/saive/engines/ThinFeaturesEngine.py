import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from dataclasses import dataclass
from boruta import BorutaPy
from sklearn.ensemble import RandomForestClassifier, RandomForestRegressor
from sklearn.preprocessing import LabelEncoder

from saive.engines.Engine import Engine
from saive.helpers.tools import get_config_item, resolve_cores


DECISION_COLORS = {'Confirmed': 'darkgreen', 'Tentative': 'darkorange', 'Rejected': 'firebrick'}


class ThinFeaturesException(Exception):
    """Custom exception for tool"""

    pass


@dataclass
class ThinFeaturesResult:
    selection_report: pd.DataFrame
    subset_data: pd.DataFrame
    retained: list


class ThinFeaturesEngine(Engine):
    """Class to hold the logic for removing irrelevant predictors with Boruta"""

    def __init__(self, n_cores: int = None, max_iter: int = None, random_state: int = None):
        super().__init__()
        self.n_cores = n_cores
        self.max_iter = max_iter if max_iter else get_config_item('THIN', 'MAX_ITER')
        self.max_depth = get_config_item('THIN', 'MAX_DEPTH')
        self.min_rows = get_config_item('THIN', 'MIN_ROWS')
        self.random_state = random_state if random_state is not None else get_config_item('THIN', 'RANDOM_STATE')

    def get_estimator(self, classification: bool, n_cores: int):
        """Random forest used by Boruta to rank the predictors"""

        if classification:
            return RandomForestClassifier(n_jobs=n_cores, max_depth=self.max_depth, class_weight='balanced', random_state=self.random_state)
        return RandomForestRegressor(n_jobs=n_cores, max_depth=self.max_depth, random_state=self.random_state)

    def get_training_arrays(self, data: pd.DataFrame, outcome_col: str, predictors: list) -> tuple:
        """Complete rows of the predictors and outcome as numpy arrays"""

        non_numeric = [column for column in predictors if not pd.api.types.is_numeric_dtype(data[column])]
        if non_numeric:
            raise ThinFeaturesException(f'Predictors must be numeric: {", ".join(non_numeric)}')

        complete = data[predictors + [outcome_col]].dropna()
        if len(complete) < self.min_rows:
            raise ThinFeaturesException(f'Insufficient data: {len(complete)} complete rows, {self.min_rows} needed')
        if complete[outcome_col].nunique() <= 1:
            raise ThinFeaturesException('Insufficient data: the outcome has a single value')

        X = complete[predictors].to_numpy(dtype=float)
        classification = isinstance(data[outcome_col].dtype, pd.CategoricalDtype)
        if classification:
            y = LabelEncoder().fit_transform(complete[outcome_col].to_numpy())
        else:
            y = complete[outcome_col].to_numpy(dtype=float)
        return X, y, classification

    def run(self, data: pd.DataFrame, outcome_col: str, n_cores: int = None) -> ThinFeaturesResult:
        """
        Select the relevant predictors of an outcome with Boruta

        Boruta compares the random forest importance of every predictor with
        the importance of shuffled copies ("shadow" features) over repeated
        runs and confirms, rejects, or leaves tentative each predictor.
        Confirmed and tentative predictors are kept.

        param pd.DataFrame data: Outcome column and numeric predictor columns
        param str outcome_col: Name of the outcome column, categorical for classification
        param int n_cores: Maximum number of cores, all cores minus one if None
        return: ThinFeaturesResult with the Boruta report and the thinned data
        """

        if outcome_col not in data.columns:
            raise ThinFeaturesException(f"Outcome column '{outcome_col}' not found")
        predictors = [column for column in data.columns if column != outcome_col]
        if not predictors:
            raise ThinFeaturesException('No predictor columns to select from')

        n_cores = resolve_cores(n_cores if n_cores is not None else self.n_cores)
        X, y, classification = self.get_training_arrays(data, outcome_col, predictors)
        self.message(f'Running Boruta on {len(predictors)} predictors and {len(y)} rows')

        selector = BorutaPy(
            self.get_estimator(classification, n_cores),
            n_estimators='auto',
            max_iter=self.max_iter,
            random_state=self.random_state,
            verbose=0,
        )
        selector.fit(X, y)

        decisions = np.where(selector.support_, 'Confirmed', np.where(selector.support_weak_, 'Tentative', 'Rejected'))
        importance_history = getattr(selector, 'importance_history_', None)
        if importance_history is not None and len(importance_history):
            mean_importance = np.nanmean(np.asarray(importance_history, dtype=float), axis=0)
        else:
            mean_importance = np.full(len(predictors), np.nan)
        selection_report = pd.DataFrame({
            'predictor': predictors,
            'rank': selector.ranking_,
            'meanImp': mean_importance[:len(predictors)],
            'decision': decisions,
        }).sort_values(by=['rank', 'meanImp'], ascending=[True, False]).reset_index(drop=True)

        retained = [predictor for predictor, decision in zip(predictors, decisions) if decision != 'Rejected']
        if not retained:
            raise ThinFeaturesException('Boruta rejected every predictor')
        self.message(f'Retained predictors: {", ".join(retained)}')

        return ThinFeaturesResult(selection_report, data[[outcome_col] + retained], retained)

    def select_features(self, table: pd.DataFrame, outcome_col: str) -> tuple:
        """Variable selection adapter for the spatial prediction workflow"""

        result = self.run(table, outcome_col)
        return result.retained, result.selection_report


def plot_selection_report(selection_report: pd.DataFrame, output_path: str, top_n: int = 20) -> None:
    """Bar chart of Boruta ranks per predictor, colored by decision"""

    plot_data = selection_report.head(top_n)
    fig, ax = plt.subplots(figsize=(8, max(3, 0.4 * len(plot_data))))
    sns.barplot(data=plot_data, x='rank', y='predictor', hue='decision', palette=DECISION_COLORS, dodge=False, orient='h', ax=ax)
    ax.set_title('Boruta Predictor Selection')
    ax.set_xlabel('Rank (1 = relevant)')
    plt.tight_layout()
    plt.savefig(output_path, dpi=100)
    plt.close(fig)

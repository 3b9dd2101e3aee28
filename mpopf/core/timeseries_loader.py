"""
Time Series Load Profiles
=========================

Builds the per-period ``factors`` of an MPOPF model from an hourly load
profile stored as CSV. Periods are numbered from 1 in file order.

Usage Example
-------------
>>> from mpopf.core.timeseries_loader import TimeseriesLoader
>>> timeseries = TimeseriesLoader('load_profile.csv', load_column='Load')
>>> periods = timeseries.select_representative_periods(n_periods=12)
>>> factors = timeseries.get_factors(periods, normalize='peak')
>>> mp = create_model(factory, time_periods=len(factors), factors=factors)
"""
import os
from typing import List, Optional, Sequence

import pandas as pd


class TimeseriesLoader:
    """
    Load a system load profile and turn it into period factors.

    Attributes
    ----------
    file_path : str
        CSV file with one row per period.
    load_column : str, optional
        Column holding the system load. When omitted, all numeric columns
        except ``time_column`` are summed (e.g. one column per region).
    time_column : str, optional
        Column to drop before summing.
    load_data : pd.Series, optional
        Period -> total load after ``load_profile()``.
    """

    def __init__(self, file_path: str, load_column: Optional[str] = None,
                 time_column: Optional[str] = None):
        self.file_path = str(file_path)
        self.load_column = load_column
        self.time_column = time_column
        self.load_data = None

    def load_profile(self) -> pd.Series:
        """
        Read the load profile from the CSV file.

        Returns
        -------
        pd.Series
            Total load indexed by period (1-based).
        """
        if not os.path.exists(self.file_path):
            raise FileNotFoundError(f"Load profile not found: {self.file_path}")

        df = pd.read_csv(self.file_path)
        if self.load_column is not None:
            if self.load_column not in df.columns:
                raise ValueError(f"Column {self.load_column!r} not found in {self.file_path}")
            series = df[self.load_column].astype(float)
        else:
            if self.time_column is not None:
                df = df.drop(columns=[self.time_column])
            numeric = df.select_dtypes(include='number')
            if numeric.empty:
                raise ValueError(f"No numeric load columns in {self.file_path}")
            series = numeric.sum(axis=1).astype(float)

        series.index = range(1, len(series) + 1)
        series.index.name = 'period'
        self.load_data = series
        return series

    def get_factors(self, periods: Optional[Sequence[int]] = None, normalize: str = 'peak',
                    base: Optional[float] = None) -> List[float]:
        """
        Per-period load factors.

        Parameters
        ----------
        periods : sequence of int, optional
            Periods to return, in order. Default is every period.
        normalize : str, optional
            'peak' divides by the profile maximum, 'mean' by its mean, 'base'
            by ``base`` (e.g. the case file's total load in the same units).
        base : float, optional
            Divisor used when ``normalize='base'``.

        Returns
        -------
        list of float
        """
        if self.load_data is None:
            self.load_profile()

        if normalize == 'peak':
            divisor = self.load_data.max()
        elif normalize == 'mean':
            divisor = self.load_data.mean()
        elif normalize == 'base':
            if base is None:
                raise ValueError("normalize='base' needs a base value")
            divisor = base
        else:
            raise ValueError(f"Unknown normalization: {normalize!r}")
        if divisor <= 0:
            raise ValueError("Load profile normalization divisor must be positive")

        if periods is None:
            periods = list(self.load_data.index)
        missing = [p for p in periods if p not in self.load_data.index]
        if missing:
            raise ValueError(f"Periods not found in load data: {missing}")

        return [float(self.load_data[p] / divisor) for p in periods]

    def select_representative_periods(self, n_periods: int = 24, method: str = 'peak_avg_low') -> List[int]:
        """
        Select representative time periods for multi-period optimization.

        Parameters
        ----------
        n_periods : int, optional
            Number of periods to select, default is 24
        method : str, optional
            - 'peak_avg_low': periods from the top (peak), middle (average)
              and bottom (low) of the load distribution
            - 'all': the first ``n_periods`` periods

        Returns
        -------
        list of int
            Selected period numbers in chronological order.
        """
        if self.load_data is None:
            self.load_profile()

        if method == 'all':
            return list(self.load_data.index[:n_periods])

        if method != 'peak_avg_low':
            raise ValueError(f"Unknown selection method: {method!r}")

        if n_periods >= len(self.load_data):
            return list(self.load_data.index)

        sorted_periods = list(self.load_data.sort_values(ascending=False, kind='stable').index)

        n_peak = max(1, n_periods // 4)
        peak_periods = sorted_periods[:n_peak]

        n_avg = max(0, n_periods - 2 * n_peak)
        mid_start = len(sorted_periods) // 4
        avg_periods = sorted_periods[mid_start:mid_start + n_avg]

        low_periods = sorted_periods[-n_peak:] if n_periods > n_peak else []

        selected = sorted(set(peak_periods + avg_periods + low_periods))
        return selected[:n_periods]

import io # Required for Excel export

import numpy as np
import pandas as pd

# --- Month Arithmetic ---
# All month offsets go through an integer month index so that adding months
# never skips or repeats a month regardless of the day-of-month of the input.

def normalize_month(value) -> pd.Timestamp:
    """Return the first day of the month containing `value` (str, date or Timestamp)."""
    ts = pd.Timestamp(value)
    return pd.Timestamp(year=ts.year, month=ts.month, day=1)


def month_index(value) -> int:
    """Convert a date to a monotonically increasing month number (year * 12 + month - 1)."""
    ts = pd.Timestamp(value)
    return ts.year * 12 + ts.month - 1


def month_from_index(index: int) -> pd.Timestamp:
    """Inverse of month_index: first day of the month with the given index."""
    year, month_zero = divmod(int(index), 12)
    return pd.Timestamp(year=year, month=month_zero + 1, day=1)


def add_months(value, months: int) -> pd.Timestamp:
    """First day of the month `months` after (or before, if negative) the month of `value`."""
    return month_from_index(month_index(value) + months)


def month_range(start, periods: int) -> list:
    """List of `periods` consecutive month starts beginning at the month of `start`."""
    first = month_index(start)
    return [month_from_index(first + i) for i in range(periods)]


def normalize_month_series(series: pd.Series) -> pd.Series:
    """Vectorized normalize_month for a Series of dates."""
    return pd.to_datetime(series).dt.to_period('M').dt.to_timestamp()


def month_key(value) -> str:
    """'YYYY-MM' key used for matching market shocks to forecast months."""
    return pd.Timestamp(value).strftime('%Y-%m')


def safe_float(value, default: float = 0.0) -> float:
    """Coerce optional numeric attributes (cost, price, on-hand) to float, falling back to `default`."""
    if value is None:
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return default if np.isnan(result) else result


# --- Data Export Function ---

def get_filtered_data_as_excel(dfs_to_export_dict):
    """
    Processes a dictionary of dataframes
    and returns an Excel file as a bytes object for download.
    The dictionary format is { "sheet_name": (dataframe, include_index_bool) }

    Sheets that are not DataFrames or are empty are skipped. Datetime columns
    are written as plain YYYY-MM-DD strings.
    """
    output = io.BytesIO()

    with pd.ExcelWriter(output, engine='xlsxwriter') as writer:
        for sheet_name, (df, include_index) in dfs_to_export_dict.items():

            if not isinstance(df, pd.DataFrame) or df.empty:
                continue

            # Only copy if datetime conversion is needed
            df_to_export = df
            datetime_cols = [col for col in df.columns if pd.api.types.is_datetime64_any_dtype(df[col])]

            if datetime_cols:
                df_to_export = df.copy()
                for col in datetime_cols:
                    if df_to_export[col].dt.tz is not None:
                        df_to_export[col] = df_to_export[col].dt.tz_localize(None)
                    df_to_export[col] = df_to_export[col].dt.strftime('%Y-%m-%d')

            # Excel sheet names are limited to 31 characters
            safe_sheet_name = str(sheet_name)[:31]
            df_to_export.to_excel(writer, sheet_name=safe_sheet_name, index=include_index)

            # Auto-adjust column widths
            worksheet = writer.sheets[safe_sheet_name]
            for idx, col in enumerate(df_to_export.columns):
                series = df_to_export[col]
                max_len = max(
                    series.astype(str).map(len).max(),  # Data max len
                    len(str(series.name))  # Header len
                ) + 2  # Add a little extra space
                worksheet.set_column(idx, idx, max_len)

    processed_data = output.getvalue()
    return processed_data

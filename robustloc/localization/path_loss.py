"""
Log-Distance Path-Loss Model.

Converts between received power and distance for a source with known
transmitted power and path-loss exponent:

    rssi = P_tx - 10 n log10(d / k),    k = c / (4 pi f)

which for n = 2 reduces to the Friis free-space equation. Powers are in
dBm, distances in meters, frequencies in Hz.
"""

from typing import Optional
import math

SPEED_OF_LIGHT_M_S = 299792458.0

_LN10 = math.log(10.0)


def dbm_to_power(dbm: float) -> float:
    """Convert dBm to milliwatts."""
    return 10.0 ** (dbm / 10.0)


def power_to_dbm(power_mw: float) -> float:
    """Convert milliwatts to dBm."""
    if power_mw <= 0:
        raise ValueError(f"Power must be positive: {power_mw}")
    return 10.0 * math.log10(power_mw)


def _reference_distance(frequency_hz: float) -> float:
    if not frequency_hz > 0:
        raise ValueError(f"Frequency must be positive: {frequency_hz}")
    return SPEED_OF_LIGHT_M_S / (4.0 * math.pi * frequency_hz)


def distance_from_rssi(
    rssi_dbm: float,
    tx_power_dbm: float,
    path_loss_exponent: float,
    frequency_hz: float,
) -> float:
    """
    Invert the path-loss model.

    Args:
        rssi_dbm: Received power (dBm)
        tx_power_dbm: Equivalent transmitted power (dBm)
        path_loss_exponent: Path-loss exponent (2.0 in free space)
        frequency_hz: Carrier frequency (Hz)

    Returns:
        Estimated distance (m), inf when the loss is beyond float range
    """
    if not path_loss_exponent > 0:
        raise ValueError(f"Path-loss exponent must be positive: {path_loss_exponent}")
    k = _reference_distance(frequency_hz)
    try:
        return k * 10.0 ** ((tx_power_dbm - rssi_dbm) / (10.0 * path_loss_exponent))
    except OverflowError:
        return math.inf


def rssi_from_distance(
    distance_m: float,
    tx_power_dbm: float,
    path_loss_exponent: float,
    frequency_hz: float,
) -> float:
    """
    Expected received power at a given distance.

    Args:
        distance_m: Distance to the source (m), must be positive
        tx_power_dbm: Equivalent transmitted power (dBm)
        path_loss_exponent: Path-loss exponent
        frequency_hz: Carrier frequency (Hz)

    Returns:
        Received power (dBm)
    """
    if not distance_m > 0:
        raise ValueError(f"Distance must be positive: {distance_m}")
    k = _reference_distance(frequency_hz)
    return tx_power_dbm - 10.0 * path_loss_exponent * math.log10(distance_m / k)


def distance_from_rssi_std(
    rssi_dbm: float,
    tx_power_dbm: float,
    path_loss_exponent: float,
    frequency_hz: float,
    rssi_std_db: Optional[float] = None,
    tx_power_std_db: Optional[float] = None,
    path_loss_exponent_std: Optional[float] = None,
) -> Optional[float]:
    """
    Standard deviation of an RSSI-derived distance.

    First-order propagation of the RSSI, transmitted power and path-loss
    exponent uncertainties through distance_from_rssi(). Unknown terms are
    left out.

    Returns:
        Distance standard deviation (m), or None if no uncertainty is known
    """
    if rssi_std_db is None and tx_power_std_db is None and path_loss_exponent_std is None:
        return None

    distance = distance_from_rssi(rssi_dbm, tx_power_dbm, path_loss_exponent, frequency_hz)
    n = path_loss_exponent

    # d(distance)/d(power) has the same magnitude for P_tx and rssi
    power_gain = distance * _LN10 / (10.0 * n)
    exponent_gain = distance * _LN10 * (tx_power_dbm - rssi_dbm) / (10.0 * n ** 2)

    variance = 0.0
    if rssi_std_db is not None:
        variance += (power_gain * rssi_std_db) ** 2
    if tx_power_std_db is not None:
        variance += (power_gain * tx_power_std_db) ** 2
    if path_loss_exponent_std is not None:
        variance += (exponent_gain * path_loss_exponent_std) ** 2

    return math.sqrt(variance)

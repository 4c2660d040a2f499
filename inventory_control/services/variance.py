from inventory_control.schemas.inventory_update import VarianceLevel


def variance_percent(variance: int, baseline: int) -> float:
    """Variance relative to the baseline, in percent.

    With a zero baseline any gain counts as 100% and no change as 0%. This
    differs from reporting 0% for every zero-baseline line: stock found on an
    empty shelf still shows as a full variance.
    """
    if baseline > 0:
        return round(variance / baseline * 100, 2)
    if variance == 0:
        return 0.0
    return 100.0 if variance > 0 else -100.0


def variance_level(percent: float, warning_threshold: float, error_threshold: float) -> VarianceLevel:
    # Thresholds are exclusive: a variance equal to a threshold stays at the lower level
    magnitude = abs(percent)
    if magnitude > error_threshold:
        return VarianceLevel.ERROR
    if magnitude > warning_threshold:
        return VarianceLevel.WARNING
    return VarianceLevel.OK

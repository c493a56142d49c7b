import os


def GetEnv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


def GetIntEnv(name: str, default: int) -> int:
    raw = GetEnv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc


class AllowanceSettings:
    MaxAttempts = GetIntEnv("ALLOWANCE_MAX_ATTEMPTS", 3)
    LedgerPageSize = GetIntEnv("ALLOWANCE_LEDGER_PAGE_SIZE", 50)
    LedgerMaxPageSize = GetIntEnv("ALLOWANCE_LEDGER_MAX_PAGE_SIZE", 200)


Settings = AllowanceSettings()

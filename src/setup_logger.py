import logging
from pathlib import Path
from datetime import datetime, timezone

LOGGER_NAME = "ggstats"

def setup_logger(data_root: str | Path, prefix: str = "sync", level: str = "INFO") -> logging.Logger:
    """
    Configure the 'ggstats' logger that every module logs through
    (via getLogger("ggstats.<area>")).
    Each script run gets its own log file:
        <data_root>/logs/<prefix>-YYYYMMDD-HHMMSS.log
    Idempotent inside one run.
    """
    data_root = Path(data_root)
    log_dir = data_root / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    lvl = getattr(logging, str(level).upper(), logging.INFO)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(lvl)
    logger.propagate = False

    # Only add handlers if logger is new
    if not logger.handlers:
        # Unique log file per run
        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        log_file = log_dir / f"{prefix}-{ts}.log"

        fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

        fh = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        fh.setLevel(lvl)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

        sh = logging.StreamHandler()
        sh.setLevel(lvl)
        sh.setFormatter(fmt)
        logger.addHandler(sh)

        logger.info(f"Logging to {log_file}")

    return logger

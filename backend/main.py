import sys
import datetime as _dt
from loguru import logger

from config import ConfigurationError, SimulationValidationError, load_simulation_configuration
from backend.utils import log_input_parameters, log_simulation_results
from milestone_detector import MilestoneDetector
from performance import PerformanceMonitor
from simulation import SimulationEngine


def main():
    """
    Main execution entry point.

    Loads configuration, runs the projection with its transitions, detects
    milestones and logs the results.

    Usage: python -m backend.main [config.json] [week|fortnight|month|year]
    """
    current_timestamp_str = _dt.datetime.now().strftime("%Y%m%d_%H%M%S")
    log_filename = f"projection_log_{current_timestamp_str}.log"

    # Configure loguru
    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level="INFO",
        colorize=True,
    )
    logger.add(
        log_filename,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        level="INFO",
        rotation="10 MB",
    )

    logger.info(f"Logging initialized. Log file: {log_filename}")

    # --- LOAD CONFIGURATION FROM JSON ---
    if len(sys.argv) > 1:
        json_filename = sys.argv[1]
    else:
        json_filename = "config.json"
        logger.info(
            f"No config file specified via argument. Defaulting to '{json_filename}'"
        )
    interval = sys.argv[2] if len(sys.argv) > 2 else "month"

    logger.info(f"Loading configuration from: {json_filename}")
    try:
        config = load_simulation_configuration(json_filename)
        logger.info(
            f"Configuration loaded and validated successfully ({len(config.transitions)} transition(s))."
        )
    except ConfigurationError as e:
        logger.error(f"Configuration file error: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Configuration validation error: {e}")
        return 1

    log_input_parameters(config)

    monitor = PerformanceMonitor()
    try:
        engine = SimulationEngine(interval=interval, monitor=monitor)
        result = engine.run_simulation_with_transitions(config)
    except SimulationValidationError as e:
        logger.error(f"Simulation rejected: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Invalid simulation settings: {e}")
        return 1

    detector = MilestoneDetector(monitor=monitor)
    detection = detector.detect_milestones(
        result.states, config.base_parameters, result.transition_points
    )

    log_simulation_results(result, detection)

    for operation, seconds in monitor.summary().items():
        logger.debug(f"{operation}: {seconds * 1000:.1f} ms")

    logger.info(f"--- Main execution finished. Log: {log_filename} ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())

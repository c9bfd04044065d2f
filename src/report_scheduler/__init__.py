"""Report Scheduler -- recurring report execution with a bounded queue.

Architecture::

    Layer 1 -- Types & Errors
        enums.py           Schedule types, priorities, execution statuses
        errors.py          Structured error hierarchy (SchedulerError)
        models.py          Schedule / execution dataclasses and DTOs

    Layer 2 -- Ambient
        logging.py         structlog configuration and context binding
        settings.py        pydantic-settings configuration

    Layer 3 -- Scheduling
        scheduling/        Service, timer heap, queue, retry, off-peak, backends
"""

__version__ = "0.1.0"

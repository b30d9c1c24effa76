"""Transport, configuration, logging, errors and cancellation."""

"""Output stages that deliver log events to stdout, files, sockets, HTTP, Redis, e-mail, AMQP and metrics."""

__version__ = "0.1.18.dev0"
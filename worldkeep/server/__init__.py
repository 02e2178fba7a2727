from worldkeep.server.base import ServerProcess
from worldkeep.server.output import LogLine, OutputSubscription
from worldkeep.server.process import ChildProcess

__all__ = ["ChildProcess", "LogLine", "OutputSubscription", "ServerProcess", "create_server"]


def create_server(settings, console):
    return ChildProcess(
        console,
        line_limit=settings.output_line_limit,
        queue_size=settings.output_queue_size,
    )

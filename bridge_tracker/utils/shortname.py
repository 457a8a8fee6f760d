import logging


class ShortNameFilter(logging.Filter):
    """Adds ``record.shortname``: the last two dotted parts of the logger name."""

    def filter(self, record):
        path = record.name.split(".")
        record.shortname = "-".join(path[-2:])
        return True


def configure_logging(level=logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="[%(levelname)s] %(shortname)s: %(message)s",
    )
    # logger filters don't see propagated records, the handlers do
    for handler in logging.getLogger().handlers:
        handler.addFilter(ShortNameFilter())

import logging
from campus_fulfillment.middleware.logger import ColoredFormatter, setup_logger

def test_setup_logger_does_not_stack_handlers(tmp_path):
    log_file = tmp_path / "logs" / "fulfillment.log"
    root = logging.getLogger()
    try:
        setup_logger("DEBUG", str(log_file))
        setup_logger("INFO", str(log_file))

        ours = [h for h in root.handlers if getattr(h, "_fulfillment_handler", False)]
        assert len(ours) == 2
        assert root.level == logging.INFO

        logging.getLogger("campus_fulfillment.test").info("Order ORD-20260101-ABC123 claimed")
        for handler in ours:
            handler.flush()
        assert "Order ORD-20260101-ABC123 claimed" in log_file.read_text()
    finally:
        for handler in list(root.handlers):
            if getattr(handler, "_fulfillment_handler", False):
                root.removeHandler(handler)
                handler.close()

def test_colored_formatter_includes_logger_name():
    record = logging.LogRecord("campus_fulfillment.orders", logging.WARNING, __file__, 1,
                               "Rejected transition %s", ("ready -> delivered",), None)
    line = ColoredFormatter(datefmt="%Y-%m-%d %H:%M:%S").format(record)
    assert "WARNING - campus_fulfillment.orders - Rejected transition ready -> delivered" in line

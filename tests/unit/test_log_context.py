"""
Unit tests for host-labelled logging.
"""

import logging

from snapkeeper.utils.log_context import HostContextFilter, HostRoutingHandler, host_logger


def make_record(host=None):
    record = logging.LogRecord('snapkeeper.test', logging.INFO, __file__, 1, 'message', None, None)
    if host is not None:
        record.host = host
    return record


class TestHostLogger:

    def test_host_label(self):
        assert host_logger('snapkeeper.test', 'web1').extra == {'host': 'web1'}
        assert host_logger('snapkeeper.test').extra == {'host': 'global'}


class TestHostContextFilter:

    def test_default_label(self):
        record = make_record()

        assert HostContextFilter().filter(record) is True
        assert record.host == 'global'

    def test_keeps_label(self):
        record = make_record('web1')

        HostContextFilter().filter(record)

        assert record.host == 'web1'


class TestHostRoutingHandler:
    """Tests for HostRoutingHandler"""

    def test_one_file_per_host(self, tmp_path):
        """Test records end up in the file of their host"""
        handler = HostRoutingHandler(str(tmp_path / 'hosts'))
        handler.setFormatter(logging.Formatter('%(host)s %(message)s'))

        handler.emit(make_record('web1'))
        handler.emit(make_record('db1'))
        handler.emit(make_record('web1'))
        handler.emit(make_record('global'))
        handler.close()

        assert (tmp_path / 'hosts' / 'web1.log').read_text() == 'web1 message\nweb1 message\n'
        assert (tmp_path / 'hosts' / 'db1.log').read_text() == 'db1 message\n'
        assert not (tmp_path / 'hosts' / 'global.log').exists()

    def test_adapter_records_routed(self, tmp_path):
        """Test records logged through host_logger() are routed"""
        handler = HostRoutingHandler(str(tmp_path))
        handler.setFormatter(logging.Formatter('%(message)s'))
        logger = logging.getLogger('snapkeeper.test.routing')
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            host_logger('snapkeeper.test.routing', 'web1').info('Starting backup')
        finally:
            logger.removeHandler(handler)
            handler.close()

        assert (tmp_path / 'web1.log').read_text() == 'Starting backup\n'

"""Tests for shared operator state."""

from unittest import mock

import pytest

from state import OperatorState


@pytest.fixture
def k8s():
    with (
        mock.patch("state.k8s_config") as k8s_config,
        mock.patch("state.k8s_client") as k8s_client,
    ):
        yield k8s_config, k8s_client


class TestOperatorState:
    """Tests for OperatorState class."""

    def test_services_built_once(self, k8s):
        state = OperatorState()

        image_service = state.get_image_service()
        import_service = state.get_import_service()

        assert state.get_image_service() is image_service
        assert state.get_import_service() is import_service
        k8s[0].load_incluster_config.assert_called_once()

    def test_dispatcher_listens_to_both_kinds(self, k8s):
        state = OperatorState()

        image_service = state.get_image_service()
        import_service = state.get_import_service()

        assert len(image_service.informer._listeners) == 1
        assert image_service.informer._listeners == import_service.informer._listeners

    def test_start_and_close_dispatcher(self, k8s):
        state = OperatorState()

        state.start_dispatcher()
        state.start_dispatcher()
        state.close(timeout=5)

        assert state._dispatcher_thread is None
        assert state._stop_event.is_set()

"""Endpoint transport: connectivity checking, response handling and the HTTP poster."""

from tsdb_shipper.transport.connectivity import ConnectivityChecker
from tsdb_shipper.transport.poster import HttpMetricsPoster
from tsdb_shipper.transport.response_handlers import ResponseHandler, get_handler

__all__ = ["ConnectivityChecker", "HttpMetricsPoster", "ResponseHandler", "get_handler"]

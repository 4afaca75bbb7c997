"""Tests for ensure_topics — create, already-exists, real failures."""

from unittest.mock import MagicMock, patch

import pytest
from confluent_kafka import KafkaException

from anomaly.topics import ensure_topics


def _future(exc=None):
    f = MagicMock()
    if exc is not None:
        f.result.side_effect = exc
    return f


@patch("anomaly.topics.AdminClient")
class TestEnsureTopics:
    def test_creates_requested_topics(self, mock_admin):
        mock_admin.return_value.create_topics.return_value = {"a": _future(), "b": _future()}
        ensure_topics("broker:9092", ["a", "b"], num_partitions=6, replication_factor=2)

        mock_admin.assert_called_once_with({"bootstrap.servers": "broker:9092"})
        new_topics = mock_admin.return_value.create_topics.call_args.args[0]
        assert [t.topic for t in new_topics] == ["a", "b"]
        assert all(t.num_partitions == 6 for t in new_topics)
        assert all(t.replication_factor == 2 for t in new_topics)

    def test_existing_topic_is_fine(self, mock_admin):
        exists = KafkaException("TOPIC_ALREADY_EXISTS: topic 'a' already exists")
        mock_admin.return_value.create_topics.return_value = {"a": _future(exists)}
        ensure_topics("broker:9092", ["a"])

    def test_other_errors_propagate(self, mock_admin):
        denied = KafkaException("TOPIC_AUTHORIZATION_FAILED")
        mock_admin.return_value.create_topics.return_value = {"a": _future(denied)}
        with pytest.raises(KafkaException):
            ensure_topics("broker:9092", ["a"])

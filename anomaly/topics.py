"""Kafka topic bootstrap shared by the services and the event generator."""

from confluent_kafka import KafkaException
from confluent_kafka.admin import AdminClient, NewTopic


def ensure_topics(bootstrap_servers, topics, num_partitions=3, replication_factor=1):
    """Create each topic in *topics* unless the broker already has it."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    futures = admin.create_topics([
        NewTopic(name, num_partitions=num_partitions, replication_factor=replication_factor)
        for name in topics
    ])
    for name, future in futures.items():
        try:
            future.result()
        except KafkaException as e:
            if "TOPIC_ALREADY_EXISTS" not in str(e):
                raise
            print(f"Topic '{name}' exists")
        else:
            print(f"Topic '{name}' created")

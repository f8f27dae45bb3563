"""
aiokafka implementations of the engine's Kafka interfaces.

Modules:
    connection: ClusterConnection and the static connection provider
    reader: KafkaSourceReader
    producer: KafkaTargetWriter
    admin: KafkaOffsetCommitter
    factory: AIOKafkaClientFactory
"""

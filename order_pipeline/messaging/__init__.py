from .producer import EventPublisher, RabbitMQProducer

__all__ = ["EventPublisher", "RabbitMQProducer"]

"""Example: two channels multiplexed over one Kafka topic."""

import asyncio
import logging

from kafka_pubsub import KafkaOptions, KafkaPubSub

logging.basicConfig(level=logging.INFO)


async def main() -> None:
    pubsub = KafkaPubSub(KafkaOptions(topic="events", host="localhost", port=9092))

    def on_order(payload) -> None:
        print("order:", payload)

    def on_signup(payload) -> None:
        print("signup:", payload)

    orders = await pubsub.subscribe("orders", on_order)
    await pubsub.subscribe("signups", on_signup)

    await pubsub.publish("signups", {"event": "user.signup", "user_id": 101})
    await pubsub.publish("orders", {"event": "order.placed", "order_id": 201})
    await asyncio.sleep(1)

    pubsub.unsubscribe(orders)
    await pubsub.close()


if __name__ == "__main__":
    asyncio.run(main())

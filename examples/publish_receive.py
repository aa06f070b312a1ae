"""Publish a message and read it back from a subscription.

Configure with environment variables (or a .env file):

    PUBSUB_PROJECT_ID=my-project
    PUBSUB_IS_LOCAL=true
    PUBSUB_CREDENTIALS_FILE=./pubsub-dev.json

or point PUBSUB_EMULATOR_HOST at a local emulator.
"""

import logging

import anyio

from pubsubkit import EnvSettings, Message, PubSub, ReceivedMessage, TopicConfig

TOPIC = "pubsubkit-example"
SUBSCRIPTION = "pubsubkit-example-sub"

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main() -> None:
    env = EnvSettings()
    options = env.to_options().with_auto_originated_at()

    async with PubSub.from_config(env.to_config(), options) as pubsub:
        await pubsub.create_topic(TOPIC, TopicConfig())
        await pubsub.create_subscriptions(TOPIC, {SUBSCRIPTION: ""})

        send, receive = anyio.create_memory_object_stream[ReceivedMessage](10)

        async with anyio.create_task_group() as tg:
            tg.start_soon(pubsub.receive, SUBSCRIPTION, send)

            message_id = await pubsub.publish(Message(payload="hello world", topic=TOPIC))
            logger.info("Published message %s", message_id)

            async for msg in receive:
                logger.info("Got message: %s %s", msg.decode(), msg.attributes)
                await msg.ack()
                break

            tg.cancel_scope.cancel()


if __name__ == "__main__":
    anyio.run(main)

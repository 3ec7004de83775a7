"""
mock_settlement_consumer.py — Mock Implementation of the Downstream Settlement Consumer

This module simulates the settlement/reconciliation system that receives
completed checkout batches from the checkout service (via RabbitMQ).

Purpose:
    • Verify that completed batches reach the settlement queue
    • Inspect the published payload (wallet split, totals, free-order flag)

Communication Channels:
    - Input Queue: 'settlement.batches.new' ← Receives completed batches
"""

import json
import logging
import os
import time

import pika

logging.basicConfig(level=logging.INFO)
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
SETTLEMENT_QUEUE = os.environ.get("SETTLEMENT_QUEUE", "settlement.batches.new")

RECEIVED_BATCHES = []


def get_mq_connection():
    """
    Establishes and returns a connection to the RabbitMQ message broker.

    Returns:
        pika.BlockingConnection: Active connection to the RabbitMQ broker.

    Raises:
        pika.exceptions.AMQPConnectionError: If the broker is unavailable.
    """
    credentials = pika.PlainCredentials('shopag', 'shopag')
    return pika.BlockingConnection(
        pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials)
    )


def on_batch_received(ch, method, properties, body):
    """
    Callback triggered when a completed batch arrives on the settlement queue.

    Args:
        ch (BlockingChannel): The RabbitMQ channel object.
        method (pika.spec.Basic.Deliver): Delivery metadata for acknowledgment.
        properties (pika.BasicProperties): Message properties.
        body (bytes): The raw message payload in JSON format.

    Behavior:
        - Logs the wallet split of the batch and keeps it in `RECEIVED_BATCHES`.
        - Acknowledges well-formed messages.
        - Rejects messages without JSON body or batch id (no requeue).
    """
    try:
        data = json.loads(body)
        batch_id = data["batchOrderId"]
    except (ValueError, KeyError, TypeError) as e:
        logging.error(f"[Settlement] Ungültige Nachricht verworfen: {e}")
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        return

    wallets = data.get("walletUnits") or {}
    logging.info(f"[Settlement] Batch {batch_id} erhalten: {len(wallets)} Wallet(s), "
                 f"Gesamt {data.get('totalUnits')} {data.get('currencyUnit')}, "
                 f"gratis: {data.get('isFreeOrder')}")
    RECEIVED_BATCHES.append(data)
    ch.basic_ack(delivery_tag=method.delivery_tag)


def main():
    """
        Starts the mock settlement consumer loop.

        Behavior:
            - Establishes a RabbitMQ connection.
            - Waits for incoming batch messages.
            - Automatically retries connection every 5 seconds if lost.
            - Stops gracefully on keyboard interrupt (Ctrl+C).
    """
    logging.info("Mock Settlement Consumer startet...")
    while True:
        try:
            connection = get_mq_connection()
            channel = connection.channel()
            channel.queue_declare(queue=SETTLEMENT_QUEUE, durable=True)

            logging.info("[Settlement] Wartet auf abgeschlossene Batches. (Consumer aktiv)")
            channel.basic_consume(queue=SETTLEMENT_QUEUE, on_message_callback=on_batch_received)
            channel.start_consuming()
        except pika.exceptions.AMQPConnectionError as e:
            logging.warning(f"MQ-Verbindung fehlgeschlagen, versuche erneut in 5s... {e}")
            time.sleep(5)
        except KeyboardInterrupt:
            break


if __name__ == '__main__':
    main()

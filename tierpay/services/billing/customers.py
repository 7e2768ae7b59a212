import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tierpay.errors import NotFound
from tierpay.models.client import Client
from tierpay.services.billing.payloads import CLIENT_ID_KEY
from tierpay.services.payment_gateway import stripe_gateway

logger = logging.getLogger(__name__)


class Customers:
    @staticmethod
    def get_client(db: Session, client_id: uuid.UUID) -> Client:
        client = db.get(Client, client_id)
        if not client:
            raise NotFound("Client not found")
        return client

    @staticmethod
    def resolve(db: Session, client: Client) -> str:
        """Return the client's Stripe customer id, creating it on first use.

        When the customer is created but the id cannot be saved locally the
        checkout continues with the new id; the orphaned Stripe customer is
        left for manual cleanup.
        """
        if client.stripe_customer_id:
            logger.info(
                "Reusing Stripe customer %s",
                client.stripe_customer_id,
                extra={"client_id": str(client.id)},
            )
            return client.stripe_customer_id

        client_id = client.id
        customer = stripe_gateway.create_customer(
            name=client.name,
            email=client.contact_email,
            metadata={CLIENT_ID_KEY: str(client_id)},
        )
        customer_id: str = customer["id"]

        try:
            client.stripe_customer_id = customer_id
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Failed to save Stripe customer %s; continuing checkout",
                customer_id,
                extra={"client_id": str(client_id), "step": "save_customer_id"},
            )
        else:
            logger.info(
                "Saved Stripe customer %s",
                customer_id,
                extra={"client_id": str(client_id)},
            )
        return customer_id


customers = Customers()

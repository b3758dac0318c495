# Overview: Flask extension instances for the database and the payment processor.

from flask_sqlalchemy import SQLAlchemy

from .services.shopify_client import ShopifyClient

db = SQLAlchemy()
shopify = ShopifyClient()

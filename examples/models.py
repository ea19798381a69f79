"""Minimal shop models for sqla-batchloads examples."""

from __future__ import annotations

import datetime
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy import orm

from sqla_batchloads import polymorphic_relationship


class Base(orm.DeclarativeBase):
    pass


product_tags = sa.Table(
    "product_tags",
    Base.metadata,
    sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id"), primary_key=True),
    sa.Column("tag_id", sa.Integer, sa.ForeignKey("tags.id"), primary_key=True),
)


class Customer(Base):
    __tablename__ = "customers"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))

    orders: orm.Mapped[list[Order]] = orm.relationship(back_populates="customer", lazy="noload")


class Order(Base):
    __tablename__ = "orders"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    placed_on: orm.Mapped[datetime.date] = orm.mapped_column(sa.Date)
    customer_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("customers.id"))

    customer: orm.Mapped[Customer] = orm.relationship(back_populates="orders", lazy="noload")
    lines: orm.Mapped[list[OrderLine]] = orm.relationship(back_populates="order", lazy="noload")


class OrderLine(Base):
    __tablename__ = "order_lines"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    order_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("orders.id"))
    sellable_type: orm.Mapped[str] = orm.mapped_column(sa.String(50))
    sellable_id: orm.Mapped[int] = orm.mapped_column()
    price: orm.Mapped[Decimal] = orm.mapped_column(sa.Numeric(10, 2))

    order: orm.Mapped[Order] = orm.relationship(back_populates="lines", lazy="noload")
    # "Product" rows live in products, "GiftCard" rows in gift_cards
    sellable = polymorphic_relationship("sellable_type", "sellable_id")


class Product(Base):
    __tablename__ = "products"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    title: orm.Mapped[str] = orm.mapped_column(sa.String(200))

    tags: orm.Mapped[list[Tag]] = orm.relationship(
        secondary=product_tags, back_populates="products", lazy="noload"
    )


class GiftCard(Base):
    __tablename__ = "gift_cards"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    title: orm.Mapped[str] = orm.mapped_column(sa.String(200))


class Tag(Base):
    __tablename__ = "tags"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(50))

    products: orm.Mapped[list[Product]] = orm.relationship(
        secondary=product_tags, back_populates="tags", lazy="noload"
    )

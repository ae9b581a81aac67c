"""Reservation domain - Connector booking, payment holds and the reservation lifecycle"""

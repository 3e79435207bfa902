"""Serverless functions deployed next to the hosted backend."""

"""Escrow contract program and deployment script"""

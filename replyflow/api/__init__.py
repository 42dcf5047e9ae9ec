"""API module"""

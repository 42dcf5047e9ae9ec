"""Database module"""

"""Messaging gateway clients"""

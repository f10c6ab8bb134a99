"""lodestar package"""

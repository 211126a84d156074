"""Payment gateway boundary and webhook event handling"""

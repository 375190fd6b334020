"""Load test: many customers racing for a small stock of one product.

Point it at a running server whose admin account is given by
LOCUST_ADMIN_EMAIL / LOCUST_ADMIN_PASSWORD. Expect a mix of 201 and 409
responses on /orders and never a negative stock on /products.
"""
import os
import random

from locust import HttpUser, between, task

ADMIN_EMAIL = os.getenv("LOCUST_ADMIN_EMAIL", "admin@example.com")
ADMIN_PASSWORD = os.getenv("LOCUST_ADMIN_PASSWORD", "admin")
CONTENDED_SKU = os.getenv("LOCUST_SKU", "LOAD-1")


class CustomerUser(HttpUser):
    wait_time = between(0.1, 0.5)

    def _login(self, email, password):
        r = self.client.post("/auth/login", json={"email": email, "password": password})
        if r.status_code != 200:
            return None
        return {"Authorization": f"Bearer {r.json()['access_token']}"}

    def on_start(self):
        self.headers = None
        self.product_id = None
        admin = self._login(ADMIN_EMAIL, ADMIN_PASSWORD)
        if admin is None:
            return

        # first client to get here creates the contended product, the rest reuse it
        self.client.post("/products", json={"sku": CONTENDED_SKU, "name": "Contended", "price": "1.00", "stock": 50}, headers=admin)
        for p in self.client.get("/products", headers=admin).json():
            if p["sku"] == CONTENDED_SKU:
                self.product_id = p["id"]

        email = f"load_{random.randint(1, 1_000_000)}@example.com"
        r = self.client.post("/users", json={"name": email, "email": email, "role": "customer", "password": "pw"}, headers=admin)
        if r.status_code == 201:
            self.headers = self._login(email, "pw")

    @task(3)
    def create_order(self):
        if not self.headers or not self.product_id:
            return
        body = {"items": [{"product_id": self.product_id, "quantity": random.randint(1, 3)}]}
        with self.client.post("/orders", json=body, headers=self.headers, catch_response=True) as r:
            if r.status_code in (201, 409):
                r.success()

    @task(1)
    def list_orders(self):
        if self.headers:
            self.client.get("/orders", headers=self.headers)

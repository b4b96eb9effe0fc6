from locust import HttpUser, task, between
import random


class APISimUser(HttpUser):
    wait_time = between(0.01, 0.2)

    def on_start(self):
        resp = self.client.post("/api/posts", data={
            "title": "Locust post",
            "content": "load test body",
            "author": "locust",
        })
        self.post_id = resp.json()["id"] if resp.status_code == 201 else None

    @task(3)
    def get_feed(self):
        self.client.get("/api/posts")

    @task(1)
    def get_stats(self):
        self.client.get("/api/stats")

    @task(1)
    def send_engagement(self):
        if not self.post_id:
            return
        ev = random.choice(["view", "like"])
        self.client.post(f"/api/posts/{self.post_id}/{ev}", name=f"/api/posts/[id]/{ev}")

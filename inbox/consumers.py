from channels.generic.websocket import AsyncJsonWebsocketConsumer


class EmailConsumer(AsyncJsonWebsocketConsumer):
    async def connect(self):
        user = self.scope["user"]
        if user.is_anonymous:
            await self.close()
            return
        self.group_name = f"user_{user.id}"
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()

    async def disconnect(self, code):
        if hasattr(self, "group_name"):
            await self.channel_layer.group_discard(self.group_name, self.channel_name)

    async def new_email(self, event):
        await self.send_json({
            "event": "new_email",
            "id": event["id"],
            "message_id": event["message_id"],
            "subject": event["subject"],
            "summary": event["summary"],
            "received_at": event["received_at"],
            "category": event["category"],
            "account": event["account"],
        })

    async def sweep_report(self, event):
        await self.send_json({
            "event": "sweep_report",
            "account_id": event["account_id"],
            "outcome": event["outcome"],
            "listed": event["listed"],
            "ingested": event["ingested"],
            "duplicates": event["duplicates"],
            "failed": event["failed"],
        })

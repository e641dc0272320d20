from fastapi import WebSocket


class ConnectionManager:
    def __init__(self):
        self.patient_connections: dict[int, list[WebSocket]] = {}
        self.board_connections: list[WebSocket] = []

    async def connect_patient(self, patient_id: int, ws: WebSocket):
        await ws.accept()
        self.patient_connections.setdefault(patient_id, []).append(ws)

    def disconnect_patient(self, patient_id: int, ws: WebSocket):
        conns = self.patient_connections.get(patient_id, [])
        if ws in conns:
            conns.remove(ws)
        if not conns and patient_id in self.patient_connections:
            del self.patient_connections[patient_id]

    async def broadcast_patient(self, patient_id: int, data: dict):
        for ws in list(self.patient_connections.get(patient_id, [])):
            try:
                await ws.send_json(data)
            except Exception:
                self.disconnect_patient(patient_id, ws)

    async def connect_board(self, ws: WebSocket):
        await ws.accept()
        self.board_connections.append(ws)

    def disconnect_board(self, ws: WebSocket):
        if ws in self.board_connections:
            self.board_connections.remove(ws)

    async def broadcast_board(self, data: dict):
        for ws in list(self.board_connections):
            try:
                await ws.send_json(data)
            except Exception:
                self.disconnect_board(ws)


manager = ConnectionManager()

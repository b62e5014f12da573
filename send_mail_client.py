# this is a minimal test program which talks to the mail drop server.  It is provided for testing purposes.
import socket
import time

s = socket.create_connection(('localhost', 6543))
print(s.recv(1024).decode())

for request in [
    "SEND\nfoo\nbar\nA test from Arnie\nI'll be back.\n",
    "SEND\nfoo\nbar\nA test from Arnie\nI'll be back.\n",
    "LIST\nbar\n",
    "READ\nbar\n1\n",
    "DEL\nbar\n1\n",
]:
    s.sendall(request.encode())
    print(s.recv(1024).decode())
    time.sleep(0.1)

s.sendall(b"quit\n")
s.close()

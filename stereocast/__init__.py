"""
stereocast
==========

Live 3D positions of people seen by a calibrated front/back stereo rig.

Two camera clients stream timestamped frames over a WebSocket. Frames
captured within the pairing window are paired, rectified, searched for
people and triangulated; every reconstruction is broadcast to all
connected clients as six (x, y, z) slots.

References:
- OpenCV Stereo Vision: https://docs.opencv.org/4.x/dd/d53/tutorial_py_depthmap.html
- Multiple View Geometry in Computer Vision, Hartley & Zisserman
"""

__version__ = "1.0.0"
